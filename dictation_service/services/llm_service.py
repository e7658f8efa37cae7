"""
LLM client for structured clinical note extraction
"""
import time
from typing import Optional, Protocol

import openai
from openai import AsyncOpenAI, APIStatusError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type, retry_if_exception

from dictation_service.config import settings
from dictation_service.core.errors import NoteEngineError, NoteEngineTimeout
from dictation_service.core.logging import get_logger, audit_logger

logger = get_logger(__name__)

# Transient failures worth another attempt; a completed response is never re-requested
retryable_exceptions = (
    openai.APIConnectionError,
)


def is_server_error(exception):
    """Return True if the exception is an OpenAI 5xx error"""
    return isinstance(exception, APIStatusError) and exception.status_code >= 500


CLINICAL_SYSTEM_PROMPT = """You are a clinical documentation assistant. Convert the provided transcript into a structured clinical note using STRICT JSON format.

Output must be a single valid JSON object with these exact keys:
- noteType: string (e.g., "assessment", "progress_note", "evaluation")
- subjective: string (patient's reported symptoms, concerns, history)
- objective: string (measurable findings, observations, test results)
- assessment: string (clinical interpretation, diagnosis, condition status)
- plan: string (treatment plan, recommendations, follow-up)
- icd10Codes: array of strings (relevant ICD-10 codes if identifiable)
- redFlags: array of strings (urgent concerns or warning signs mentioned)
- followUp: string (follow-up instructions or timeline)

Extract clinical information accurately from the transcript. If information is not available for a section, use an empty string or empty array as appropriate. Do not add any text outside the JSON object."""


def build_user_prompt(transcript_text: str) -> str:
    return f'Transcript:\n"""{transcript_text}"""'


class StructuredNoteClient(Protocol):
    model: str

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.0,
        json_mode: bool = True,
        timeout: float = 60.0,
    ) -> str: ...


class OpenAINoteClient:
    """Chat completion client returning the model's raw text output."""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 2000,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(settings.max_retries),
        retry=(retry_if_exception_type(retryable_exceptions) | retry_if_exception(is_server_error)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(f"Retrying OpenAI completion, attempt {retry_state.attempt_number}..."),
    )
    async def _create(self, messages, temperature: float, json_mode: bool, timeout: float):
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=self.max_tokens,
            timeout=timeout,
            **kwargs,
        )

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.0,
        json_mode: bool = True,
        timeout: float = 60.0,
    ) -> str:
        start = time.time()
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            response = await self._create(messages, temperature, json_mode, timeout)
        except openai.APITimeoutError as e:
            self._log_call("timeout", start)
            raise NoteEngineTimeout(str(e))
        except openai.APIError as e:
            self._log_call("error", start)
            logger.error(f"OpenAI completion failed: {e}")
            raise NoteEngineError(str(e))

        self._log_call("ok", start)
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise NoteEngineError("No response content from extraction engine")
        return content

    def _log_call(self, outcome: str, start: float):
        audit_logger.log_external_api_call(
            service="openai",
            operation="chat.completions",
            outcome=outcome,
            response_time_ms=int((time.time() - start) * 1000),
            model=self.model,
        )
