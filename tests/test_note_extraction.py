import asyncio
import json

import pytest

from conftest import VALID_NOTE_JSON, FakeNoteClient, InMemoryRecordStore, make_dictation
from dictation_service.core.errors import (
    AlreadyExtractedError,
    DictationNotFoundError,
    EmptyTranscriptError,
    ExtractionEngineFailedError,
    ExtractionInProgressError,
    ExtractionTimedOutError,
    InvalidEngineJSONError,
    InvalidNoteSchemaError,
    NoteEngineError,
    WrongStateError,
)
from dictation_service.core.security import OwnerAuthorizer
from dictation_service.models.dictation import DictationStatus, ExtractionState
from dictation_service.services.llm_service import CLINICAL_SYSTEM_PROMPT
from dictation_service.services.note_extraction import NoteExtractionService

USER = {"sub": "clinician-1"}
TRANSCRIPT = "Patient reports pain in the left knee after a fall."


def _service(records: InMemoryRecordStore, client: FakeNoteClient, timeout: float = 1.0):
    return NoteExtractionService(records, client, OwnerAuthorizer(), timeout=timeout, temperature=0.0)


def _store_with(dictation) -> InMemoryRecordStore:
    records = InMemoryRecordStore()
    records.dictations[dictation.id] = dictation
    return records


def _done_store() -> InMemoryRecordStore:
    return _store_with(make_dictation(status=DictationStatus.DONE, transcript_text=TRANSCRIPT))


def test_extraction_returns_fields_verbatim_and_persists_note() -> None:
    records = _done_store()
    client = FakeNoteClient()

    note = asyncio.run(_service(records, client).extract(USER, "d-1"))

    assert note.dictation_id == "d-1"
    assert note.model == "gpt-4o-mini"
    assert note.result == json.loads(VALID_NOTE_JSON)
    assert list(records.notes) == [note.id]
    assert records.dictations["d-1"].extraction_state == ExtractionState.EXTRACTED
    assert records.dictations["d-1"].status == DictationStatus.DONE


def test_engine_is_called_deterministically_with_the_transcript() -> None:
    records = _done_store()
    client = FakeNoteClient()

    asyncio.run(_service(records, client).extract(USER, "d-1"))

    call = client.calls[0]
    assert call["system_prompt"] == CLINICAL_SYSTEM_PROMPT
    assert TRANSCRIPT in call["user_prompt"]
    assert call["temperature"] == 0.0
    assert call["json_mode"] is True


def test_omitted_optional_fields_default_to_empty_arrays() -> None:
    records = _done_store()
    payload = {"noteType": "evaluation", "subjective": "s", "objective": "o", "assessment": "a", "plan": "p"}

    note = asyncio.run(_service(records, FakeNoteClient(json.dumps(payload))).extract(USER, "d-1"))

    assert note.result["icd10Codes"] == []
    assert note.result["redFlags"] == []


@pytest.mark.parametrize(
    "dictation",
    [
        make_dictation(status=DictationStatus.PROCESSING),
        make_dictation(status=DictationStatus.FAILED, error="No speech detected in audio"),
    ],
    ids=["processing", "failed"],
)
def test_wrong_state_is_rejected_without_side_effects(dictation) -> None:
    records = _store_with(dictation)
    client = FakeNoteClient()

    with pytest.raises(WrongStateError) as exc_info:
        asyncio.run(_service(records, client).extract(USER, dictation.id))

    assert dictation.status.value in exc_info.value.message
    assert records.writes() == 0
    assert records.calls["insert_note"] == 0
    assert client.calls == []


def test_empty_transcript_is_rejected() -> None:
    records = _store_with(make_dictation(status=DictationStatus.DONE, transcript_text="  "))

    with pytest.raises(EmptyTranscriptError):
        asyncio.run(_service(records, FakeNoteClient()).extract(USER, "d-1"))
    assert records.writes() == 0


def test_unknown_and_foreign_dictations_are_not_found() -> None:
    records = _done_store()
    service = _service(records, FakeNoteClient())

    with pytest.raises(DictationNotFoundError):
        asyncio.run(service.extract(USER, "missing"))
    with pytest.raises(DictationNotFoundError):
        asyncio.run(service.extract({"sub": "someone-else"}, "d-1"))
    assert records.writes() == 0


def test_missing_plan_names_plan_and_allows_retry() -> None:
    records = _done_store()
    payload = json.loads(VALID_NOTE_JSON)
    del payload["plan"]

    with pytest.raises(InvalidNoteSchemaError) as exc_info:
        asyncio.run(_service(records, FakeNoteClient(json.dumps(payload))).extract(USER, "d-1"))

    assert "plan" in exc_info.value.message
    assert records.notes == {}
    assert records.dictations["d-1"].extraction_state is None
    assert records.dictations["d-1"].status == DictationStatus.DONE

    note = asyncio.run(_service(records, FakeNoteClient()).extract(USER, "d-1"))
    assert note.result["plan"] == ""


def test_invalid_json_creates_no_note() -> None:
    records = _done_store()

    with pytest.raises(InvalidEngineJSONError) as exc_info:
        asyncio.run(_service(records, FakeNoteClient("Sure! Here is the note: {")).extract(USER, "d-1"))

    assert "Invalid JSON" in exc_info.value.message
    assert records.calls["insert_note"] == 0
    assert records.dictations["d-1"].extraction_state is None


def test_engine_failure_and_timeout_map_to_their_own_errors() -> None:
    records = _done_store()

    with pytest.raises(ExtractionEngineFailedError):
        asyncio.run(_service(records, FakeNoteClient(error=NoteEngineError("503 upstream"))).extract(USER, "d-1"))
    with pytest.raises(ExtractionTimedOutError):
        asyncio.run(_service(records, FakeNoteClient(delay=1.0), timeout=0.05).extract(USER, "d-1"))

    assert records.notes == {}
    assert records.dictations["d-1"].extraction_state is None


def test_second_extraction_is_rejected() -> None:
    records = _done_store()
    service = _service(records, FakeNoteClient())
    asyncio.run(service.extract(USER, "d-1"))

    with pytest.raises(AlreadyExtractedError):
        asyncio.run(service.extract(USER, "d-1"))

    assert len(records.notes) == 1


def test_concurrent_extractions_accept_exactly_one() -> None:
    records = _done_store()
    client = FakeNoteClient(delay=0.05)
    service = _service(records, client)

    async def scenario():
        return await asyncio.gather(
            service.extract(USER, "d-1"),
            service.extract(USER, "d-1"),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], ExtractionInProgressError)
    assert len(records.notes) == 1
    assert len(client.calls) == 1
