"""
Dictation ingestion: validate, store, record, schedule
"""

import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from dictation_service.core.errors import (
    AudioTooLargeError,
    NoAudioError,
    RecordStoreError,
    UnsupportedAudioFormatError,
    UnsupportedVendorError,
)
from dictation_service.core.logging import get_logger, audit_logger
from dictation_service.core.metrics import dictations_ingested
from dictation_service.models.dictation import Dictation, DictationStatus
from dictation_service.services.scheduler import TranscriptionScheduler
from dictation_service.services.stt_service import extension_for
from dictation_service.services.transcription_worker import (
    FailureReason,
    TranscriptionJob,
    TranscriptionWorker,
)
from dictation_service.stores.base import BlobStore, RecordStore

logger = get_logger(__name__)


def normalize_content_type(content_type: Optional[str]) -> str:
    """Drops parameters such as ``;codecs=opus`` that browsers attach to recordings"""
    return (content_type or "").split(";")[0].strip().lower()


class DictationIngestionService:
    def __init__(
        self,
        blob_store: BlobStore,
        record_store: RecordStore,
        scheduler: TranscriptionScheduler,
        worker: TranscriptionWorker,
        vendors: Iterable[str],
        default_vendor: str,
        max_size_bytes: int,
        supported_formats: List[str],
        signed_url_ttl: int,
    ):
        self.blob_store = blob_store
        self.record_store = record_store
        self.scheduler = scheduler
        self.worker = worker
        self.vendors = sorted(vendors)
        self.default_vendor = default_vendor
        self.max_size_bytes = max_size_bytes
        self.supported_formats = supported_formats
        self.signed_url_ttl = signed_url_ttl

    def validate(self, audio: Optional[bytes], content_type: str, vendor: str) -> None:
        if not audio:
            raise NoAudioError()
        if len(audio) > self.max_size_bytes:
            raise AudioTooLargeError(len(audio), self.max_size_bytes)
        if content_type not in self.supported_formats:
            raise UnsupportedAudioFormatError(content_type, self.supported_formats)
        if vendor not in self.vendors:
            raise UnsupportedVendorError(vendor, self.vendors)

    async def ingest(
        self,
        clinician_id: str,
        audio: Optional[bytes],
        content_type: Optional[str],
        duration_sec: int = 0,
        patient_id: Optional[str] = None,
        vendor: Optional[str] = None,
    ) -> Dictation:
        """
        Stores the recording, creates its dictation record and schedules
        transcription without waiting for it.

        Nothing is recorded when validation or the blob write fails. When the
        signed URL cannot be created the record is moved straight to failed
        and returned, since the upload itself already succeeded.
        """
        content_type = normalize_content_type(content_type)
        vendor = vendor or self.default_vendor
        self.validate(audio, content_type, vendor)

        dictation_id = str(uuid.uuid4())
        storage_path = f"audio/{clinician_id}/{dictation_id}.{extension_for(content_type)}"

        logger.info("Uploading audio file", dictation_id=dictation_id, size=len(audio), content_type=content_type)
        await self.blob_store.put(storage_path, audio, content_type)

        now = datetime.utcnow()
        dictation = Dictation(
            id=dictation_id,
            clinician_id=clinician_id,
            patient_id=patient_id,
            storage_path=storage_path,
            content_type=content_type,
            duration_sec=max(duration_sec or 0, 0),
            vendor=vendor,
            status=DictationStatus.PROCESSING,
            created_at=now,
            updated_at=now,
        )
        try:
            await self.record_store.insert(dictation)
        except RecordStoreError:
            await self.blob_store.delete(storage_path)
            raise

        dictations_ingested.labels(vendor=vendor).inc()
        audit_logger.log_dictation_ingested(
            dictation_id=dictation_id,
            user_id=clinician_id,
            audio_size_bytes=len(audio),
            content_type=content_type,
            vendor=vendor,
        )

        try:
            audio_url = await self.blob_store.signed_url(storage_path, self.signed_url_ttl)
        except Exception as e:
            logger.error(f"Signed URL error: {e}", dictation_id=dictation_id)
            await self.worker.fail(dictation_id, FailureReason.SIGNED_URL, "signed_url")
            return await self.record_store.get(dictation_id) or dictation

        scheduled = self.scheduler.submit(
            TranscriptionJob(
                dictation_id=dictation_id,
                audio_url=audio_url,
                mime_type=content_type,
                vendor=vendor,
            )
        )
        if not scheduled:
            await self.worker.fail(dictation_id, FailureReason.NOT_SCHEDULED, "not_scheduled")
            return await self.record_store.get(dictation_id) or dictation
        return dictation
