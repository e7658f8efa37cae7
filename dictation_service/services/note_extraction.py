"""
Structured note extraction from finished transcripts
"""

import asyncio
import time
import uuid
from datetime import datetime
from typing import Any, Dict

from dictation_service.core.errors import (
    AlreadyExtractedError,
    DictationNotFoundError,
    DictationServiceError,
    EmptyTranscriptError,
    ExtractionEngineFailedError,
    ExtractionInProgressError,
    ExtractionTimedOutError,
    NoteEngineError,
    NoteEngineTimeout,
    WrongStateError,
)
from dictation_service.core.logging import get_logger, audit_logger
from dictation_service.core.metrics import extraction_outcomes
from dictation_service.core.security import OwnerAuthorizer
from dictation_service.models.clinical_note import parse_clinical_note
from dictation_service.models.dictation import (
    Dictation,
    DictationStatus,
    ExtractionState,
    StructuredNote,
)
from dictation_service.services.llm_service import (
    CLINICAL_SYSTEM_PROMPT,
    StructuredNoteClient,
    build_user_prompt,
)
from dictation_service.stores.base import RecordStore

logger = get_logger(__name__)


class NoteExtractionService:
    """
    Turns the transcript of a ``done`` dictation into a validated StructuredNote.

    At most one note is accepted per dictation: the record store claims the
    dictation atomically before the engine is called, and the claim is
    released again if the engine output is rejected so the caller can retry.
    """

    def __init__(
        self,
        record_store: RecordStore,
        note_client: StructuredNoteClient,
        authorizer: OwnerAuthorizer,
        timeout: float,
        temperature: float = 0.0,
    ):
        self.record_store = record_store
        self.note_client = note_client
        self.authorizer = authorizer
        self.timeout = timeout
        self.temperature = temperature

    async def _load_checked(self, user: Dict[str, Any], dictation_id: str) -> Dictation:
        dictation = await self.record_store.get(dictation_id)
        if dictation is None or not self.authorizer.can_access(user, dictation):
            raise DictationNotFoundError(dictation_id)
        if dictation.status != DictationStatus.DONE:
            raise WrongStateError(dictation.status.value)
        if not (dictation.transcript_text or "").strip():
            raise EmptyTranscriptError()
        if dictation.extraction_state == ExtractionState.EXTRACTED:
            raise AlreadyExtractedError()
        return dictation

    async def _claim(self, dictation_id: str) -> None:
        if await self.record_store.claim_extraction(dictation_id):
            return
        current = await self.record_store.get(dictation_id)
        if current is not None and current.extraction_state == ExtractionState.EXTRACTED:
            raise AlreadyExtractedError()
        raise ExtractionInProgressError()

    async def _call_engine(self, transcript_text: str) -> str:
        try:
            return await asyncio.wait_for(
                self.note_client.complete(
                    CLINICAL_SYSTEM_PROMPT,
                    build_user_prompt(transcript_text),
                    temperature=self.temperature,
                    json_mode=True,
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, NoteEngineTimeout):
            raise ExtractionTimedOutError(self.timeout)
        except NoteEngineError as e:
            raise ExtractionEngineFailedError(f"Extraction engine failed: {e}")

    async def extract(self, user: Dict[str, Any], dictation_id: str) -> StructuredNote:
        start = time.time()
        dictation = await self._load_checked(user, dictation_id)
        await self._claim(dictation_id)

        logger.info(
            "Processing dictation",
            dictation_id=dictation_id,
            transcript_length=len(dictation.transcript_text),
        )
        try:
            raw = await self._call_engine(dictation.transcript_text)
            note = parse_clinical_note(raw)
            structured = StructuredNote(
                id=str(uuid.uuid4()),
                dictation_id=dictation_id,
                model=self.note_client.model,
                result=note.to_result(),
                created_at=datetime.utcnow(),
            )
            await self.record_store.insert_note(structured)
        except DictationServiceError as e:
            extraction_outcomes.labels(outcome=e.reason).inc()
            logger.warning(f"Extraction rejected: {e.message}", dictation_id=dictation_id, reason=e.reason)
            await self.record_store.release_extraction(dictation_id)
            raise
        except BaseException:
            await self.record_store.release_extraction(dictation_id)
            raise

        extraction_outcomes.labels(outcome="ok").inc()
        audit_logger.log_note_extracted(
            dictation_id=dictation_id,
            note_id=structured.id,
            model=structured.model,
            processing_time_ms=int((time.time() - start) * 1000),
        )
        return structured
