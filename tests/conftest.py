import asyncio
import os
import threading
import time
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

os.environ.setdefault("API_SECRET_KEY", "test-secret-key")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("DATA_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ENVIRONMENT", "production")

import pytest

from dictation_service.core.errors import (
    AlreadyExtractedError,
    BlobDownloadError,
    RecordStoreError,
    StorageError,
)
from dictation_service.models.dictation import (
    Dictation,
    DictationStatus,
    ExtractionState,
    StructuredNote,
)
from dictation_service.services.stt_service import TranscriptionResult


class InMemoryRecordStore:
    """Record store double. No await sits between a check and its write, so updates are atomic."""

    def __init__(self):
        self.dictations: Dict[str, Dictation] = {}
        self.notes: Dict[str, StructuredNote] = {}
        self.calls: Counter = Counter()
        self.fail_insert = False
        self.fail_done_update = False
        self.history: Dict[str, List[DictationStatus]] = {}

    async def insert(self, dictation: Dictation) -> None:
        self.calls["insert"] += 1
        if self.fail_insert:
            raise RecordStoreError("insert failed for test")
        self.dictations[dictation.id] = dictation
        self.history[dictation.id] = [dictation.status]

    async def update_status(self, dictation_id, status, fields, expected_status=DictationStatus.PROCESSING) -> bool:
        self.calls["update_status"] += 1
        if self.fail_done_update and status == DictationStatus.DONE:
            raise RecordStoreError("update failed for test")
        current = self.dictations.get(dictation_id)
        if current is None or current.status != expected_status:
            return False
        self.dictations[dictation_id] = current.model_copy(
            update={**fields, "status": status, "updated_at": datetime.utcnow()}
        )
        self.history[dictation_id].append(status)
        return True

    async def get(self, dictation_id: str) -> Optional[Dictation]:
        self.calls["get"] += 1
        return self.dictations.get(dictation_id)

    async def list_for_clinician(self, clinician_id: str, limit: int) -> List[Dictation]:
        self.calls["list_for_clinician"] += 1
        own = [d for d in self.dictations.values() if d.clinician_id == clinician_id]
        return sorted(own, key=lambda d: d.created_at, reverse=True)[:limit]

    async def claim_extraction(self, dictation_id: str) -> bool:
        self.calls["claim_extraction"] += 1
        current = self.dictations.get(dictation_id)
        if current is None or current.status != DictationStatus.DONE or current.extraction_state is not None:
            return False
        self.dictations[dictation_id] = current.model_copy(update={"extraction_state": ExtractionState.IN_PROGRESS})
        return True

    async def release_extraction(self, dictation_id: str) -> None:
        self.calls["release_extraction"] += 1
        current = self.dictations.get(dictation_id)
        if current is not None and current.extraction_state == ExtractionState.IN_PROGRESS:
            self.dictations[dictation_id] = current.model_copy(update={"extraction_state": None})

    async def insert_note(self, note: StructuredNote) -> None:
        self.calls["insert_note"] += 1
        if any(n.dictation_id == note.dictation_id for n in self.notes.values()):
            raise AlreadyExtractedError()
        self.notes[note.id] = note
        current = self.dictations[note.dictation_id]
        self.dictations[note.dictation_id] = current.model_copy(update={"extraction_state": ExtractionState.EXTRACTED})

    async def list_notes(self, dictation_id: str) -> List[StructuredNote]:
        self.calls["list_notes"] += 1
        return [n for n in self.notes.values() if n.dictation_id == dictation_id]

    def writes(self) -> int:
        return sum(self.calls[name] for name in ("insert", "update_status", "claim_extraction", "insert_note"))


class FakeBlobStore:
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_put = False
        self.fail_signed_url = False
        self.fail_get = False

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        if self.fail_put:
            raise StorageError("Failed to upload audio: disk full")
        self.blobs[path] = data

    async def signed_url(self, path: str, ttl_seconds: int) -> str:
        if self.fail_signed_url:
            raise StorageError("signing failed for test")
        return f"memory://{path}"

    async def get(self, url: str, timeout: float) -> bytes:
        if self.fail_get:
            raise BlobDownloadError("HTTP 403")
        return self.blobs[url[len("memory://"):]]

    async def delete(self, path: str) -> None:
        self.deleted.append(path)
        self.blobs.pop(path, None)


class FakeSTT:
    """Speech-to-text double; ``gate`` holds every call until the test sets it."""

    vendor = "openai"

    def __init__(self, text: str = "Patient reports lower back pain for two weeks.", delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.text = text
        self.delay = delay
        self.error = error
        self.gate: Optional[threading.Event] = None
        self.calls = 0

    async def transcribe(self, audio: bytes, mime_type: str, timeout: float) -> TranscriptionResult:
        self.calls += 1
        if self.gate is not None:
            while not self.gate.is_set():
                await asyncio.sleep(0.01)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TranscriptionResult(text=self.text, raw={"text": self.text, "duration": 12.5}, duration=12.5)


VALID_NOTE_JSON = (
    '{"noteType":"progress_note","subjective":"pt reports pain","objective":"","assessment":"",'
    '"plan":"","icd10Codes":[],"redFlags":[],"followUp":""}'
)


class FakeNoteClient:
    model = "gpt-4o-mini"

    def __init__(self, response: str = VALID_NOTE_JSON, error: Optional[Exception] = None, delay: float = 0.0):
        self.response = response
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system_prompt, user_prompt, temperature=0.0, json_mode=True, timeout=60.0) -> str:
        self.calls.append(
            {"system_prompt": system_prompt, "user_prompt": user_prompt, "temperature": temperature, "json_mode": json_mode}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


def make_dictation(
    dictation_id: str = "d-1",
    clinician_id: str = "clinician-1",
    status: DictationStatus = DictationStatus.PROCESSING,
    transcript_text: Optional[str] = None,
    error: Optional[str] = None,
) -> Dictation:
    now = datetime.utcnow()
    return Dictation(
        id=dictation_id,
        clinician_id=clinician_id,
        storage_path=f"audio/{clinician_id}/{dictation_id}.webm",
        vendor="openai",
        status=status,
        transcript={"text": transcript_text} if transcript_text else None,
        transcript_text=transcript_text,
        error=error,
        created_at=now,
        updated_at=now,
    )


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def auth_headers():
    from dictation_service.core.security import security_manager

    def _headers(sub: str = "clinician-1") -> Dict[str, str]:
        return {"Authorization": f"Bearer {security_manager.create_access_token(sub)}"}

    return _headers
