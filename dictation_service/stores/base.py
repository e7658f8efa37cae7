"""
Collaborator contracts for storage
"""

from typing import Any, Dict, List, Optional, Protocol

from dictation_service.models.dictation import Dictation, DictationStatus, StructuredNote


class BlobStore(Protocol):
    async def put(self, path: str, data: bytes, content_type: str) -> None: ...

    async def signed_url(self, path: str, ttl_seconds: int) -> str: ...

    async def get(self, url: str, timeout: float) -> bytes: ...

    async def delete(self, path: str) -> None: ...


class RecordStore(Protocol):
    async def insert(self, dictation: Dictation) -> None: ...

    async def update_status(
        self,
        dictation_id: str,
        status: DictationStatus,
        fields: Dict[str, Any],
        expected_status: DictationStatus = DictationStatus.PROCESSING,
    ) -> bool: ...

    async def get(self, dictation_id: str) -> Optional[Dictation]: ...

    async def list_for_clinician(self, clinician_id: str, limit: int) -> List[Dictation]: ...

    async def claim_extraction(self, dictation_id: str) -> bool: ...

    async def release_extraction(self, dictation_id: str) -> None: ...

    async def insert_note(self, note: StructuredNote) -> None: ...

    async def list_notes(self, dictation_id: str) -> List[StructuredNote]: ...
