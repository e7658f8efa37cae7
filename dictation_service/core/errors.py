"""
Error taxonomy for the dictation pipeline
"""

from typing import Any, Dict, List, Optional

from fastapi import status


class DictationServiceError(Exception):
    """Base error carrying a machine-readable reason and an HTTP status."""

    reason = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


# --- Input errors ---

class NoAudioError(DictationServiceError):
    reason = "no_audio"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Audio file is required"):
        super().__init__(message)


class AudioTooLargeError(DictationServiceError):
    reason = "audio_too_large"
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    def __init__(self, size_bytes: int, limit_bytes: int):
        super().__init__(
            f"Audio file too large (max {limit_bytes // (1024 * 1024)}MB)",
            details={"size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )


class UnsupportedAudioFormatError(DictationServiceError):
    reason = "unsupported_audio_format"
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE

    def __init__(self, content_type: Optional[str], supported: List[str]):
        super().__init__(
            f"Unsupported audio format: {content_type}",
            details={"supported": supported},
        )


# --- Storage errors ---

class StorageError(DictationServiceError):
    reason = "storage_failed"
    status_code = status.HTTP_502_BAD_GATEWAY


class RecordStoreError(DictationServiceError):
    reason = "record_store_failed"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class InvalidSignedURLError(DictationServiceError):
    reason = "invalid_signed_url"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Signed URL is invalid or expired"):
        super().__init__(message)


# --- Lookup errors ---

class DictationNotFoundError(DictationServiceError):
    reason = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, dictation_id: str):
        super().__init__("Dictation not found", details={"dictation_id": dictation_id})


# --- Extraction precondition errors ---

class WrongStateError(DictationServiceError):
    reason = "wrong_state"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current_status: str):
        super().__init__(
            f"Cannot process dictation with status: {current_status}",
            details={"status": current_status},
        )
        self.current_status = current_status


class EmptyTranscriptError(DictationServiceError):
    reason = "empty_transcript"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self):
        super().__init__("No transcript text available")


class ExtractionInProgressError(DictationServiceError):
    reason = "extraction_in_progress"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self):
        super().__init__("A note extraction for this dictation is already running")


class AlreadyExtractedError(DictationServiceError):
    reason = "already_extracted"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self):
        super().__init__("A structured note already exists for this dictation")


# --- Extraction content errors ---

class ExtractionEngineFailedError(DictationServiceError):
    reason = "extraction_engine_failed"
    status_code = status.HTTP_502_BAD_GATEWAY


class ExtractionTimedOutError(DictationServiceError):
    reason = "extraction_timed_out"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Extraction engine timed out after {timeout_seconds:g} seconds")


class InvalidEngineJSONError(DictationServiceError):
    reason = "invalid_json"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self):
        super().__init__("Invalid JSON from extraction engine")


class InvalidNoteSchemaError(DictationServiceError):
    reason = "invalid_note_schema"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, fields: List[str]):
        super().__init__(
            f"Invalid response structure - missing or malformed fields: {', '.join(fields)}",
            details={"fields": fields},
        )
        self.fields = fields


# --- Collaborator boundary errors (raised by clients, mapped by services) ---

class ExternalServiceError(Exception):
    """Raised by external clients; never leaves the component that called the client."""

    service = "external"


class SpeechToTextError(ExternalServiceError):
    service = "speech_to_text"


class NoteEngineError(ExternalServiceError):
    service = "structured_note"


class BlobDownloadError(ExternalServiceError):
    service = "blob_store"


class SpeechToTextTimeout(SpeechToTextError):
    """The engine gave up on the request before producing a transcript."""


class NoteEngineTimeout(NoteEngineError):
    pass


class UnsupportedVendorError(DictationServiceError):
    reason = "unsupported_vendor"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, vendor: str, supported: List[str]):
        super().__init__(f"Unsupported transcription vendor: {vendor}", details={"supported": supported})
