"""
Fixed record shape for structured clinical notes and its validation
"""

import json
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator

from dictation_service.core.errors import InvalidEngineJSONError, InvalidNoteSchemaError

MANDATORY_FIELDS = ("noteType", "subjective", "objective", "assessment", "plan")


class ClinicalNote(BaseModel):
    """Structured clinical note as returned by the extraction engine"""
    model_config = ConfigDict(populate_by_name=True)

    note_type: StrictStr = Field(alias="noteType", description="e.g. assessment, progress_note, evaluation")
    subjective: StrictStr = Field(alias="subjective")
    objective: StrictStr = Field(alias="objective")
    assessment: StrictStr = Field(alias="assessment")
    plan: StrictStr = Field(alias="plan")
    icd10_codes: List[StrictStr] = Field(default_factory=list, alias="icd10Codes")
    red_flags: List[StrictStr] = Field(default_factory=list, alias="redFlags")
    follow_up: StrictStr = Field(default="", alias="followUp")

    @field_validator("icd10_codes", "red_flags", mode="before")
    @classmethod
    def _null_list_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("follow_up", mode="before")
    @classmethod
    def _null_follow_up_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def to_result(self) -> dict:
        return self.model_dump(by_alias=True)


def parse_clinical_note(raw_text: str) -> ClinicalNote:
    """
    Parses and validates raw engine output.

    Raises InvalidEngineJSONError when the text is not JSON, and
    InvalidNoteSchemaError naming every missing or malformed field otherwise.
    No repair of the engine output is attempted.
    """
    try:
        payload = json.loads(raw_text)
    except (TypeError, ValueError):
        raise InvalidEngineJSONError()

    if not isinstance(payload, dict):
        raise InvalidNoteSchemaError(list(MANDATORY_FIELDS))

    try:
        return ClinicalNote.model_validate(payload)
    except ValidationError as exc:
        fields: List[str] = []
        for error in exc.errors():
            name = str(error["loc"][0]) if error["loc"] else "<root>"
            if name not in fields:
                fields.append(name)
        raise InvalidNoteSchemaError(fields)
