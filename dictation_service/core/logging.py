"""
Structured logging setup for the Dictation Service
"""

import hashlib
import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from dictation_service.config import settings

# Patterns that must never reach a log sink verbatim
_PII_PATTERNS = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    (re.compile(r"\b\d{3}-\d{3}-\d{4}\b"), "[PHONE]"),
]

_HASHED_KEYS = ("user_id", "clinician_id", "patient_id")


def hash_identifier(value: str) -> str:
    """Stable short hash for identifiers that should stay correlatable but not readable"""
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def scrub_pii(text: str) -> str:
    for pattern, replacement in _PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def privacy_processor(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor: hashes person identifiers and scrubs PII from string fields"""
    for key, value in list(event_dict.items()):
        if key in _HASHED_KEYS and isinstance(value, str) and value:
            event_dict[key] = hash_identifier(value)
        elif isinstance(value, str):
            event_dict[key] = scrub_pii(value)
    return event_dict


def setup_logging():
    """Configures structured logging"""

    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    processors = [
        structlog.processors.add_log_level,
        timestamper,
        privacy_processor,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.environment == "development":
        processors.extend([
            structlog.dev.ConsoleRenderer(colors=True)
        ])
    else:
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ])

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None):
    """Returns a configured logger"""
    return structlog.get_logger(name or __name__)


class AuditLogger:
    """Dedicated logger for dictation lifecycle events"""

    def __init__(self):
        self.logger = get_logger("audit")

    def log_dictation_ingested(
        self,
        dictation_id: str,
        user_id: str,
        audio_size_bytes: int,
        content_type: str,
        vendor: str,
        **kwargs
    ):
        self.logger.info(
            "dictation_ingested",
            dictation_id=dictation_id,
            user_id=user_id,
            audio_size_bytes=audio_size_bytes,
            content_type=content_type,
            vendor=vendor,
            timestamp=datetime.utcnow().isoformat(),
            **kwargs
        )

    def log_transition(
        self,
        dictation_id: str,
        from_status: str,
        to_status: str,
        reason: Optional[str] = None,
        **kwargs
    ):
        """Logs a dictation status transition"""
        self.logger.info(
            "dictation_transition",
            dictation_id=dictation_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            timestamp=datetime.utcnow().isoformat(),
            **kwargs
        )

    def log_external_api_call(
        self,
        service: str,
        operation: str,
        outcome: str,
        response_time_ms: int,
        dictation_id: Optional[str] = None,
        **kwargs
    ):
        """Logs calls to external APIs"""
        self.logger.info(
            "external_api_call",
            service=service,
            operation=operation,
            outcome=outcome,
            response_time_ms=response_time_ms,
            dictation_id=dictation_id,
            timestamp=datetime.utcnow().isoformat(),
            **kwargs
        )

    def log_note_extracted(
        self,
        dictation_id: str,
        note_id: str,
        model: str,
        processing_time_ms: int,
        **kwargs
    ):
        self.logger.info(
            "note_extracted",
            dictation_id=dictation_id,
            note_id=note_id,
            model=model,
            processing_time_ms=processing_time_ms,
            timestamp=datetime.utcnow().isoformat(),
            **kwargs
        )

    def log_error(
        self,
        request_id: Optional[str],
        error_type: str,
        error_message: str,
        **kwargs
    ):
        """Logs error events"""
        self.logger.error(
            "error_event",
            request_id=request_id,
            error_type=error_type,
            error_message=error_message,
            timestamp=datetime.utcnow().isoformat(),
            **kwargs
        )


# Global audit logger instance
audit_logger = AuditLogger()
