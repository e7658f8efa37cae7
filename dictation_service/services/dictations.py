"""
Read-only dictation lookups
"""

from typing import Any, Dict, List

from dictation_service.core.errors import DictationNotFoundError
from dictation_service.core.security import OwnerAuthorizer
from dictation_service.models.dictation import Dictation, StructuredNote
from dictation_service.stores.base import RecordStore


class DictationQueryService:
    """Reads go straight to the record store so every poll sees the latest committed state."""

    def __init__(self, record_store: RecordStore, authorizer: OwnerAuthorizer):
        self.record_store = record_store
        self.authorizer = authorizer

    async def get(self, user: Dict[str, Any], dictation_id: str) -> Dictation:
        dictation = await self.record_store.get(dictation_id)
        if dictation is None or not self.authorizer.can_access(user, dictation):
            raise DictationNotFoundError(dictation_id)
        return dictation

    async def list(self, user: Dict[str, Any], limit: int) -> List[Dictation]:
        return await self.record_store.list_for_clinician(user["sub"], limit)

    async def list_notes(self, user: Dict[str, Any], dictation_id: str) -> List[StructuredNote]:
        await self.get(user, dictation_id)
        return await self.record_store.list_notes(dictation_id)
