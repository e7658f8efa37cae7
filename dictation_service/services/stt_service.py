"""
Speech-to-Text clients
OpenAI Whisper by default, AssemblyAI as an alternative vendor.
"""

import asyncio
import io
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import assemblyai as aai
import httpx
import openai
from assemblyai.types import AssemblyAIError
from openai import AsyncOpenAI

from dictation_service.config import STTProvider
from dictation_service.core.errors import SpeechToTextError, SpeechToTextTimeout
from dictation_service.core.logging import get_logger, audit_logger

logger = get_logger(__name__)

_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/mp4": "mp4",
    "audio/m4a": "m4a",
    "audio/ogg": "ogg",
    "audio/x-wav": "wav",
    "audio/x-m4a": "m4a",
    "audio/mp3": "mp3",
    "audio/flac": "flac",
}


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type, "webm")


@dataclass
class TranscriptionResult:
    """What a speech-to-text engine produced for one recording."""
    text: str
    raw: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    duration: Optional[float] = None


class SpeechToTextClient(Protocol):
    vendor: str

    async def transcribe(self, audio: bytes, mime_type: str, timeout: float) -> TranscriptionResult: ...


class OpenAITranscriber:
    """Whisper transcription through the OpenAI API. Never retried: each call is billed."""

    vendor = STTProvider.OPENAI.value

    def __init__(self, api_key: str, model: str = "whisper-1", client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model

    async def transcribe(self, audio: bytes, mime_type: str, timeout: float) -> TranscriptionResult:
        start = time.time()
        filename = f"audio.{extension_for(mime_type)}"
        try:
            response = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio, mime_type),
                response_format="verbose_json",
                temperature=0,
                timeout=timeout,
            )
        except openai.APITimeoutError as e:
            self._log_call("timeout", start)
            raise SpeechToTextTimeout(str(e))
        except openai.APIError as e:
            self._log_call("error", start)
            logger.error(f"OpenAI transcription failed: {e}")
            raise SpeechToTextError(str(e))

        self._log_call("ok", start)
        raw = response.model_dump()
        segments = raw.get("segments") or []
        logprobs = [s["avg_logprob"] for s in segments if s.get("avg_logprob") is not None]
        confidence = math.exp(sum(logprobs) / len(logprobs)) if logprobs else None
        return TranscriptionResult(
            text=response.text or "",
            raw=raw,
            confidence=confidence,
            duration=raw.get("duration"),
        )

    def _log_call(self, outcome: str, start: float):
        audit_logger.log_external_api_call(
            service="openai",
            operation="audio.transcriptions",
            outcome=outcome,
            response_time_ms=int((time.time() - start) * 1000),
            model=self.model,
        )


class AssemblyAITranscriber:
    """
    Transcription through AssemblyAI.

    The SDK uploads and submits the job; status is then polled over the REST
    API until ``timeout`` runs out. A job that is abandoned, by timeout or by
    cancellation, is deleted at AssemblyAI so nothing keeps running for it.
    """

    vendor = STTProvider.ASSEMBLYAI.value

    def __init__(
        self,
        api_key: str,
        base_url: str,
        http_timeout: float = 30.0,
        poll_interval: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("AssemblyAI API key is not configured.")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http_timeout = http_timeout
        self.poll_interval = poll_interval
        self.transport = transport
        self.client = aai.Client(
            settings=aai.Settings(api_key=api_key, base_url=self.base_url, http_timeout=http_timeout)
        )

    def _submit(self, audio: bytes) -> str:
        transcriber = aai.Transcriber(client=self.client, config=aai.TranscriptionConfig(punctuate=True))
        return transcriber.submit(io.BytesIO(audio)).id

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"authorization": self.api_key},
            timeout=self.http_timeout,
            transport=self.transport,
        )

    async def _fetch(self, transcript_id: str) -> Dict[str, Any]:
        async with self._http() as http:
            response = await http.get(f"/v2/transcript/{transcript_id}")
        response.raise_for_status()
        return response.json()

    async def _discard(self, transcript_id: str) -> None:
        try:
            async with self._http() as http:
                response = await http.delete(f"/v2/transcript/{transcript_id}")
            response.raise_for_status()
            logger.info(f"Deleted abandoned AssemblyAI transcript {transcript_id}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to delete AssemblyAI transcript {transcript_id}: {e}")

    def _log_call(self, outcome: str, start: float, **kwargs):
        audit_logger.log_external_api_call(
            service="assemblyai",
            operation="transcribe",
            outcome=outcome,
            response_time_ms=int((time.time() - start) * 1000),
            **kwargs,
        )

    async def transcribe(self, audio: bytes, mime_type: str, timeout: float) -> TranscriptionResult:
        start = time.time()
        deadline = start + timeout
        try:
            transcript_id = await asyncio.to_thread(self._submit, audio)
        except (AssemblyAIError, httpx.HTTPError) as e:
            self._log_call("error", start)
            raise SpeechToTextError(str(e))

        try:
            payload = await self._poll(transcript_id, deadline)
        except asyncio.CancelledError:
            await self._discard(transcript_id)
            raise
        except SpeechToTextTimeout:
            self._log_call("timeout", start, provider_transcript_id=transcript_id)
            await self._discard(transcript_id)
            raise
        except httpx.HTTPError as e:
            self._log_call("error", start, provider_transcript_id=transcript_id)
            await self._discard(transcript_id)
            raise SpeechToTextError(f"AssemblyAI status check failed: {e}")

        if payload.get("status") == "error":
            self._log_call("error", start, provider_transcript_id=transcript_id)
            logger.error(f"AssemblyAI transcription failed: {payload.get('error')}")
            raise SpeechToTextError(f"AssemblyAI transcription failed: {payload.get('error')}")

        self._log_call("ok", start, provider_transcript_id=transcript_id)
        return TranscriptionResult(
            text=payload.get("text") or "",
            raw=payload,
            confidence=payload.get("confidence"),
            duration=payload.get("audio_duration"),
        )

    async def _poll(self, transcript_id: str, deadline: float) -> Dict[str, Any]:
        while True:
            payload = await self._fetch(transcript_id)
            if payload.get("status") in ("completed", "error"):
                return payload
            remaining = deadline - time.time()
            if remaining <= 0:
                raise SpeechToTextTimeout(f"AssemblyAI transcript {transcript_id} still {payload.get('status')}")
            await asyncio.sleep(min(self.poll_interval, remaining))
