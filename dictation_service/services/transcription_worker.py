"""
Background transcription of stored dictations
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from dictation_service.core.errors import (
    BlobDownloadError,
    RecordStoreError,
    SpeechToTextError,
    SpeechToTextTimeout,
)
from dictation_service.core.logging import get_logger, audit_logger
from dictation_service.core.metrics import dictation_outcomes, transcription_duration
from dictation_service.models.dictation import DictationStatus, transition_fields
from dictation_service.services.stt_service import SpeechToTextClient, TranscriptionResult
from dictation_service.stores.base import BlobStore, RecordStore

logger = get_logger(__name__)


class FailureReason:
    """Texts stored in ``Dictation.error``; callers match on their leading words."""

    SIGNED_URL = "Signed URL creation failed"
    NO_SPEECH = "No speech detected in audio"
    SAVE_FAILED = "Failed to save transcription"
    CANCELLED = "Transcription cancelled during shutdown"
    NOT_SCHEDULED = "Transcription could not be scheduled"

    @staticmethod
    def download_failed(detail: str) -> str:
        return f"Audio download failed: {detail}"

    @staticmethod
    def timed_out(seconds: float) -> str:
        return f"Transcription timed out after {seconds:g} seconds"

    @staticmethod
    def engine_error(detail: str) -> str:
        return f"Transcription engine error: {detail}"

    @staticmethod
    def unexpected(exc: BaseException) -> str:
        return f"Transcription failed: unexpected error ({type(exc).__name__})"


@dataclass(frozen=True)
class TranscriptionJob:
    dictation_id: str
    audio_url: str
    mime_type: str
    vendor: str


class TranscriptionWorker:
    """
    Drives one dictation from ``processing`` to ``done`` or ``failed``.

    Every exit path writes a terminal state. Writes are conditional on the
    record still being ``processing``, so a record that already reached a
    terminal state is never touched again.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        record_store: RecordStore,
        stt_clients: Mapping[str, SpeechToTextClient],
        download_timeout: float,
        stt_timeout: float,
    ):
        self.blob_store = blob_store
        self.record_store = record_store
        self.stt_clients = stt_clients
        self.download_timeout = download_timeout
        self.stt_timeout = stt_timeout

    async def run(self, job: TranscriptionJob) -> None:
        start = time.time()
        dictation_id = job.dictation_id
        logger.info("Starting transcription", dictation_id=dictation_id, vendor=job.vendor)

        try:
            current = await self.record_store.get(dictation_id)
            if current is None or current.status != DictationStatus.PROCESSING:
                logger.warning("Skipping transcription for dictation that is not processing", dictation_id=dictation_id)
                return

            try:
                audio = await asyncio.wait_for(
                    self.blob_store.get(job.audio_url, self.download_timeout),
                    timeout=self.download_timeout,
                )
            except asyncio.TimeoutError:
                await self.fail(dictation_id, FailureReason.download_failed("timed out"), "download_failed")
                return
            except BlobDownloadError as e:
                await self.fail(dictation_id, FailureReason.download_failed(str(e)), "download_failed")
                return

            logger.info("Downloaded audio", dictation_id=dictation_id, size=len(audio))

            client = self.stt_clients.get(job.vendor)
            if client is None:
                await self.fail(dictation_id, FailureReason.engine_error(f"unknown vendor {job.vendor}"), "engine_error")
                return

            try:
                result = await asyncio.wait_for(
                    client.transcribe(audio, job.mime_type, self.stt_timeout),
                    timeout=self.stt_timeout,
                )
            except (asyncio.TimeoutError, SpeechToTextTimeout):
                await self.fail(dictation_id, FailureReason.timed_out(self.stt_timeout), "timed_out")
                return
            except SpeechToTextError as e:
                await self.fail(dictation_id, FailureReason.engine_error(str(e)), "engine_error")
                return

            if not (result.text or "").strip():
                await self.fail(dictation_id, FailureReason.NO_SPEECH, "no_speech")
                return

            await self.complete(dictation_id, result)

        except Exception as e:
            logger.error(f"Transcription processing error: {e}", dictation_id=dictation_id, exc_info=True)
            await self.fail(dictation_id, FailureReason.unexpected(e), "unexpected")
        finally:
            transcription_duration.observe(time.time() - start)

    async def complete(self, dictation_id: str, result: TranscriptionResult) -> None:
        raw: Dict[str, Any] = dict(result.raw)
        raw.setdefault("text", result.text)
        if result.confidence is not None:
            raw.setdefault("confidence", result.confidence)
        fields = transition_fields(DictationStatus.DONE, transcript=raw, transcript_text=result.text)
        try:
            updated = await self.record_store.update_status(dictation_id, DictationStatus.DONE, fields)
        except RecordStoreError as e:
            logger.error(f"Failed to update dictation: {e}", dictation_id=dictation_id)
            await self.fail(dictation_id, FailureReason.SAVE_FAILED, "save_failed")
            return

        if not updated:
            logger.warning("Dictation left processing before transcript was saved", dictation_id=dictation_id)
            return
        dictation_outcomes.labels(status=DictationStatus.DONE.value, reason="ok").inc()
        audit_logger.log_transition(
            dictation_id,
            DictationStatus.PROCESSING.value,
            DictationStatus.DONE.value,
            transcript_length=len(result.text),
            duration=result.duration,
        )

    async def fail(self, dictation_id: str, reason: str, kind: Optional[str] = None) -> bool:
        """Moves a processing dictation to failed. Returns False if it was no longer processing."""
        fields = transition_fields(DictationStatus.FAILED, error=reason)
        try:
            updated = await self.record_store.update_status(dictation_id, DictationStatus.FAILED, fields)
        except RecordStoreError as e:
            logger.error(f"Failed to update dictation status: {e}", dictation_id=dictation_id)
            return False

        if updated:
            dictation_outcomes.labels(status=DictationStatus.FAILED.value, reason=kind or "other").inc()
            audit_logger.log_transition(
                dictation_id, DictationStatus.PROCESSING.value, DictationStatus.FAILED.value, reason=reason
            )
        return updated
