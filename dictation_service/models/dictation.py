"""
Dictation and StructuredNote entities plus the dictation state machine
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


class DictationStatus(str, Enum):
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class ExtractionState(str, Enum):
    """Tracks the single accepted note extraction of a finished dictation."""
    IN_PROGRESS = "in_progress"
    EXTRACTED = "extracted"


# processing is the only state with outgoing edges
ALLOWED_TRANSITIONS = {
    DictationStatus.PROCESSING: frozenset({DictationStatus.DONE, DictationStatus.FAILED}),
    DictationStatus.DONE: frozenset(),
    DictationStatus.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a transition is not allowed or would break the record invariant."""


class Dictation(BaseModel):
    """One uploaded voice recording and its transcription outcome."""
    id: str
    clinician_id: str
    patient_id: Optional[str] = None
    storage_path: str
    content_type: str = "audio/webm"
    duration_sec: int = 0
    vendor: str
    status: DictationStatus = DictationStatus.PROCESSING
    transcript: Optional[Dict[str, Any]] = None
    transcript_text: Optional[str] = None
    error: Optional[str] = None
    extraction_state: Optional[ExtractionState] = None
    created_at: datetime
    updated_at: datetime


class StructuredNote(BaseModel):
    """Schema-validated clinical note derived from a dictation transcript."""
    id: str
    dictation_id: str
    model: str
    result: Dict[str, Any]
    created_at: datetime


def can_transition(current: DictationStatus, target: DictationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition_fields(
    target: DictationStatus,
    *,
    transcript: Optional[Dict[str, Any]] = None,
    transcript_text: Optional[str] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Builds the column values written together with a terminal status.

    A ``done`` transition needs a non-empty transcript and carries no error;
    a ``failed`` transition needs a non-empty error and carries no transcript.
    """
    if target == DictationStatus.DONE:
        if not transcript_text or not transcript_text.strip():
            raise InvalidTransitionError("done requires a non-empty transcript")
        if error:
            raise InvalidTransitionError("done cannot carry an error")
        return {
            "transcript": transcript or {},
            "transcript_text": transcript_text,
            "error": None,
        }
    if target == DictationStatus.FAILED:
        if not error or not error.strip():
            raise InvalidTransitionError("failed requires an error reason")
        if transcript_text:
            raise InvalidTransitionError("failed cannot carry a transcript")
        return {"transcript": None, "transcript_text": None, "error": error}
    raise InvalidTransitionError(f"{target.value} is not a transition target")


def apply_transition(
    dictation: Dictation,
    target: DictationStatus,
    now: datetime,
    **fields: Any,
) -> Dictation:
    """Returns a copy of ``dictation`` moved to ``target``; the original is untouched."""
    if not can_transition(dictation.status, target):
        raise InvalidTransitionError(
            f"{dictation.status.value} -> {target.value} is not allowed"
        )
    update = transition_fields(target, **fields)
    update.update(status=target, updated_at=now)
    return dictation.model_copy(update=update)


def satisfies_invariant(dictation: Dictation) -> bool:
    """Exactly one of {processing}, {done with transcript}, {failed with error} holds."""
    has_text = bool(dictation.transcript_text and dictation.transcript_text.strip())
    has_error = bool(dictation.error and dictation.error.strip())
    if dictation.status == DictationStatus.PROCESSING:
        return not has_text and not has_error
    if dictation.status == DictationStatus.DONE:
        return has_text and not has_error
    return has_error and not has_text
