"""Async HTTP client for the speech-to-text service (AssemblyAI REST API).

Provides SpeechServiceClient covering the three calls the pipeline needs:
submit an audio URL, poll the job, fetch the diarized paragraphs once the
job is complete.

Reads (poll, fetch) are idempotent and retried with tenacity on connection
errors, timeouts and 5xx responses (exponential backoff 1-10s). Submission
is not retried, since a repeated POST would start a second billable job.
Failures that survive the retries surface as ProviderError.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.proceedings.config import Settings, get_settings
from src.proceedings.errors import ProviderError
from src.proceedings.services.usage import (
    NullUsageRecorder,
    UsageOperation,
    UsageRecorder,
    UsageStage,
)
from src.proceedings.transcripts.schemas import Paragraph, SpeechJobStatus, UsageEvent

logger = structlog.get_logger(__name__)

PROVIDER = "speech"


def _is_transient(exc: BaseException) -> bool:
    """Connection problems, timeouts and server-side errors are worth retrying."""
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class SpeechServiceClient:
    """Async client for the speech service.

    Args:
        settings: Application settings. Uses get_settings() if None.
        usage_recorder: Receives one UsageEvent per call.
        transport: Optional httpx transport (tests inject MockTransport).
        retry_wait: Tenacity wait strategy between read retries.
    """

    TIMEOUT_MUTATE = 30.0  # submit
    TIMEOUT_READ = 30.0  # poll / fetch paragraphs (paragraph payloads are large)

    def __init__(
        self,
        settings: Settings | None = None,
        usage_recorder: UsageRecorder | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = self._settings.SPEECH_BASE_URL.rstrip("/")
        self._headers = {
            "Authorization": self._settings.SPEECH_API_KEY,
            "Content-Type": "application/json",
        }
        self._usage_recorder = usage_recorder or NullUsageRecorder()
        self._transport = transport
        self._max_attempts = max(1, self._settings.SPEECH_MAX_RETRIES)
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
            transport=self._transport,
        )

    async def _get_json(self, url: str) -> dict[str, Any]:
        """GET with retries on transient failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                async with self._client(self.TIMEOUT_READ) as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    return response.json()
        raise AssertionError("unreachable")  # pragma: no cover

    async def submit(self, audio_url: str) -> str:
        """Submit an audio URL for transcription with speaker labels.

        POST /transcript with ``speaker_labels`` enabled and the configured
        key terms as vocabulary boost.

        Args:
            audio_url: Publicly reachable audio (or video) URL.

        Returns:
            The speech job id, which doubles as the transcript id.

        Raises:
            ProviderError: If the service rejects the request or is unreachable.
        """
        payload: dict[str, Any] = {"audio_url": audio_url, "speaker_labels": True}
        keyterms = self._settings.speech_keyterms()
        if keyterms:
            payload["keyterms_prompt"] = keyterms

        started = time.perf_counter()
        try:
            async with self._client(self.TIMEOUT_MUTATE) as client:
                response = await client.post(f"{self._base_url}/transcript", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                PROVIDER,
                f"submit failed ({exc.response.status_code}): {exc.response.text}",
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(PROVIDER, f"submit failed: {exc}") from exc

        job_id = data.get("id")
        if not job_id:
            raise ProviderError(PROVIDER, "submit response carried no job id")

        await self._record(job_id, UsageOperation.SPEECH_SUBMIT, started)
        logger.info("speech.submitted", job_id=job_id, audio_url=audio_url)
        return job_id

    async def poll(self, job_id: str) -> SpeechJobStatus:
        """Get the job status (queued, processing, completed or error).

        Raises:
            ProviderError: If the status cannot be fetched.
        """
        started = time.perf_counter()
        try:
            data = await self._get_json(f"{self._base_url}/transcript/{job_id}")
        except httpx.HTTPError as exc:
            await self._record(job_id, UsageOperation.SPEECH_POLL, started, error=exc)
            raise ProviderError(PROVIDER, f"poll failed: {exc}") from exc

        await self._record(job_id, UsageOperation.SPEECH_POLL, started)
        status = SpeechJobStatus(
            status=data.get("status", "unknown"),
            language_code=data.get("language_code"),
            error=data.get("error"),
        )
        logger.debug("speech.polled", job_id=job_id, status=status.status)
        return status

    async def fetch_paragraphs(self, job_id: str) -> list[Paragraph]:
        """Fetch the diarized paragraphs of a completed job.

        GET /transcript/{id}/paragraphs returns ``{"paragraphs": [...]}``,
        each with text, start, end and words carrying a speaker label.

        Raises:
            ProviderError: If the paragraphs cannot be fetched or parsed.
        """
        started = time.perf_counter()
        try:
            data = await self._get_json(f"{self._base_url}/transcript/{job_id}/paragraphs")
        except httpx.HTTPError as exc:
            await self._record(
                job_id, UsageOperation.SPEECH_FETCH_PARAGRAPHS, started, error=exc
            )
            raise ProviderError(PROVIDER, f"fetch paragraphs failed: {exc}") from exc

        await self._record(job_id, UsageOperation.SPEECH_FETCH_PARAGRAPHS, started)
        paragraphs = [Paragraph.model_validate(p) for p in data.get("paragraphs", [])]
        logger.info("speech.paragraphs_fetched", job_id=job_id, count=len(paragraphs))
        return paragraphs

    async def _record(
        self,
        job_id: str,
        operation: str,
        started: float,
        error: Exception | None = None,
    ) -> None:
        await self._usage_recorder.record(
            UsageEvent(
                transcript_id=job_id,
                provider=PROVIDER,
                stage=UsageStage.TRANSCRIBING,
                operation=operation,
                status="error" if error else "success",
                duration_ms=int((time.perf_counter() - started) * 1000),
                error_message=str(error) if error else None,
            )
        )
