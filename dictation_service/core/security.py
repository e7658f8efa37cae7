"""
Authentication, authorization and encryption helpers
"""

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Mapping
from jose import JWTError, jwt
from fastapi import HTTPException, status, Request
from fastapi.security.utils import get_authorization_scheme_param
from cryptography.fernet import Fernet
from dictation_service.config import settings
from dictation_service.core.logging import get_logger
from dictation_service.models.dictation import Dictation

logger = get_logger(__name__)

BLOB_TOKEN_PURPOSE = "blob_read"


class SecurityManager:
    """
    Issues and checks the two kinds of JWT the service understands: clinician
    access tokens (``sub`` = clinician id) and blob tokens, which carry
    ``purpose=blob_read`` and the single storage path they unlock.
    """

    def __init__(self, secret_key: str, algorithm: str, api_key_clinicians: Optional[Mapping[str, str]] = None):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.api_key_clinicians = dict(api_key_clinicians or {})

    def _encode(self, claims: Dict[str, Any], ttl: timedelta) -> str:
        payload = dict(claims, exp=datetime.utcnow() + ttl)
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def _decode(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.warning(f"Token rejected: {e}")
            return None

    def create_access_token(self, clinician_id: str, ttl: Optional[timedelta] = None) -> str:
        ttl = ttl or timedelta(minutes=settings.access_token_expire_minutes)
        return self._encode({"sub": clinician_id}, ttl)

    def clinician_from_token(self, token: str) -> Optional[str]:
        payload = self._decode(token)
        if not payload or payload.get("purpose") == BLOB_TOKEN_PURPOSE:
            return None
        return payload.get("sub") or None

    def create_blob_token(self, path: str, ttl_seconds: int) -> str:
        return self._encode({"purpose": BLOB_TOKEN_PURPOSE, "path": path}, timedelta(seconds=ttl_seconds))

    def verify_blob_token(self, path: str, token: str) -> bool:
        payload = self._decode(token)
        if not payload or payload.get("purpose") != BLOB_TOKEN_PURPOSE:
            return False
        return payload.get("path") == path

    @staticmethod
    def hash_api_key(api_key: str) -> str:
        return hashlib.sha256(api_key.strip().encode()).hexdigest()

    def clinician_from_api_key(self, api_key: str) -> Optional[str]:
        """Only keys registered in ``api_key_clinicians`` authenticate."""
        if not api_key or not api_key.strip():
            return None
        return self.api_key_clinicians.get(self.hash_api_key(api_key))

    def generate_request_id(self) -> str:
        return secrets.token_urlsafe(16)


security_manager = SecurityManager(settings.api_secret_key, settings.token_algorithm, settings.api_key_clinicians)


async def get_current_user(request: Request) -> Dict[str, Any]:
    """
    Resolves the calling clinician from a Bearer access token or a registered
    X-API-Key. The returned ``sub`` is the clinician id used for ownership checks.
    """
    auth_header = request.headers.get("Authorization")
    scheme, credentials = get_authorization_scheme_param(auth_header)
    if scheme.lower() == "bearer" and credentials:
        clinician_id = security_manager.clinician_from_token(credentials)
        if clinician_id:
            logger.debug("Authenticated via bearer token", user_id=clinician_id)
            return {"sub": clinician_id, "auth_type": "bearer"}

    api_key = request.headers.get("X-API-Key")
    if api_key:
        clinician_id = security_manager.clinician_from_api_key(api_key)
        if clinician_id:
            logger.debug("Authenticated via API key", user_id=clinician_id)
            return {"sub": clinician_id, "auth_type": "api_key"}

    logger.warning("Authentication failed", path=request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing authentication credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


class OwnerAuthorizer:
    """Allows access to a dictation only for the clinician who recorded it."""

    def can_access(self, user: Dict[str, Any], dictation: Dictation) -> bool:
        return bool(user.get("sub")) and user["sub"] == dictation.clinician_id


class DataEncryption:
    """Fernet encryption for audio at rest."""

    def __init__(self, key: str):
        self.fernet = Fernet(key.encode())

    def encrypt_data(self, data: bytes) -> bytes:
        return self.fernet.encrypt(data)

    def decrypt_data(self, encrypted_data: bytes) -> bytes:
        return self.fernet.decrypt(encrypted_data)
