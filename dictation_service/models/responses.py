"""
Pydantic models for API responses
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dictation_service.models.dictation import Dictation, DictationStatus, StructuredNote


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DictationCreatedResponse(CamelModel):
    """Returned as soon as the recording is stored and transcription is scheduled"""
    id: str = Field(description="Dictation ID")
    status: DictationStatus = Field(description="'processing', or 'failed' when the audio link could not be issued")


class DictationView(CamelModel):
    """Current state of a dictation"""
    id: str = Field(description="Dictation ID")
    status: DictationStatus = Field(description="processing, done or failed")
    transcript_text: Optional[str] = Field(default=None, description="Plain transcript (status=done only)")
    transcript: Optional[Dict[str, Any]] = Field(default=None, description="Raw speech-to-text payload (status=done only)")
    error: Optional[str] = Field(default=None, description="Failure reason (status=failed only)")
    duration_sec: int = Field(description="Recording duration reported by the client")
    vendor: str = Field(description="Speech-to-text vendor")
    patient_id: Optional[str] = Field(default=None, description="Optional patient reference")
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_dictation(cls, dictation: Dictation) -> "DictationView":
        return cls(
            id=dictation.id,
            status=dictation.status,
            transcript_text=dictation.transcript_text,
            transcript=dictation.transcript,
            error=dictation.error,
            duration_sec=dictation.duration_sec,
            vendor=dictation.vendor,
            patient_id=dictation.patient_id,
            created_at=dictation.created_at,
            updated_at=dictation.updated_at,
        )


class DictationListResponse(CamelModel):
    items: List[DictationView]


class StructuredNoteResponse(CamelModel):
    """A persisted structured note"""
    id: str = Field(description="StructuredNote ID")
    dictation_id: str = Field(description="Owning dictation")
    model: str = Field(description="Extraction model identifier")
    result: Dict[str, Any] = Field(description="Validated clinical note")
    created_at: datetime

    @classmethod
    def from_note(cls, note: StructuredNote) -> "StructuredNoteResponse":
        return cls(
            id=note.id,
            dictation_id=note.dictation_id,
            model=note.model,
            result=note.result,
            created_at=note.created_at,
        )


class StructuredNoteListResponse(CamelModel):
    items: List[StructuredNoteResponse]


class HealthCheckResponse(CamelModel):
    """Health Check Response"""
    status: str = Field(description="Service status (healthy/unhealthy)")
    timestamp: datetime
    version: str
    uptime_seconds: int
    details: Optional[Dict[str, Any]] = Field(default=None)


class ErrorResponse(CamelModel):
    """Standardised error body"""
    error: str = Field(description="Machine-readable reason")
    message: str = Field(description="Human-readable description")
    details: Optional[Dict[str, Any]] = Field(default=None)
    request_id: Optional[str] = Field(default=None)
    timestamp: datetime


class RateLimitResponse(CamelModel):
    """Rate Limit Exceeded Response"""
    error: str = Field(default="rate_limit_exceeded")
    message: str
    retry_after: int
    limit: int
    window: int
    timestamp: datetime
