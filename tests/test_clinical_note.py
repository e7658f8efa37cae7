import json

import pytest

from conftest import VALID_NOTE_JSON
from dictation_service.core.errors import InvalidEngineJSONError, InvalidNoteSchemaError
from dictation_service.models.clinical_note import parse_clinical_note


def test_valid_note_is_returned_verbatim() -> None:
    note = parse_clinical_note(VALID_NOTE_JSON)
    result = note.to_result()

    assert result["noteType"] == "progress_note"
    assert result["subjective"] == "pt reports pain"
    assert result["objective"] == ""
    assert result["assessment"] == ""
    assert result["plan"] == ""
    assert result["icd10Codes"] == []
    assert result["redFlags"] == []
    assert result["followUp"] == ""


def test_optional_fields_default_when_omitted() -> None:
    payload = {"noteType": "assessment", "subjective": "s", "objective": "o", "assessment": "a", "plan": "p"}
    result = parse_clinical_note(json.dumps(payload)).to_result()

    assert result["icd10Codes"] == []
    assert result["redFlags"] == []
    assert result["followUp"] == ""


def test_null_optional_fields_become_empty() -> None:
    payload = {
        "noteType": "assessment", "subjective": "s", "objective": "o", "assessment": "a", "plan": "p",
        "icd10Codes": None, "redFlags": None, "followUp": None,
    }
    result = parse_clinical_note(json.dumps(payload)).to_result()
    assert result["icd10Codes"] == []
    assert result["followUp"] == ""


def test_missing_plan_is_named() -> None:
    payload = json.loads(VALID_NOTE_JSON)
    del payload["plan"]

    with pytest.raises(InvalidNoteSchemaError) as exc_info:
        parse_clinical_note(json.dumps(payload))

    assert exc_info.value.fields == ["plan"]
    assert "plan" in exc_info.value.message


def test_every_bad_field_is_named() -> None:
    payload = {"noteType": 3, "subjective": "s", "assessment": None, "plan": ["p"]}

    with pytest.raises(InvalidNoteSchemaError) as exc_info:
        parse_clinical_note(json.dumps(payload))

    assert exc_info.value.fields == ["noteType", "objective", "assessment", "plan"]


def test_malformed_optional_array_is_rejected() -> None:
    payload = json.loads(VALID_NOTE_JSON)
    payload["icd10Codes"] = "M54.5"

    with pytest.raises(InvalidNoteSchemaError) as exc_info:
        parse_clinical_note(json.dumps(payload))

    assert exc_info.value.fields == ["icd10Codes"]


@pytest.mark.parametrize("raw", ["not json", '{"noteType": "progress_note",', ""])
def test_unparseable_output_is_invalid_json(raw) -> None:
    with pytest.raises(InvalidEngineJSONError) as exc_info:
        parse_clinical_note(raw)
    assert "Invalid JSON" in exc_info.value.message


def test_json_array_is_not_a_note() -> None:
    with pytest.raises(InvalidNoteSchemaError) as exc_info:
        parse_clinical_note("[]")
    assert exc_info.value.fields == ["noteType", "subjective", "objective", "assessment", "plan"]
