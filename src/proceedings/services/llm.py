"""Schema-constrained completions via instructor + LiteLLM.

CompletionService is the single entry point every pipeline stage uses to
talk to the language model. Each call:
- sends one system + one user message through litellm.acompletion
- parses the answer into the requested Pydantic model with instructor
- reports token usage to the UsageRecorder and Prometheus
- maps provider failures onto the pipeline's error taxonomy

Error mapping:
    content policy refusal          -> ContentFilterError
    output never matched the schema -> CompletionParseError
    network / API / 5xx             -> ProviderError
"""

from __future__ import annotations

import time
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from src.proceedings.config import Settings, get_settings
from src.proceedings.core.monitoring import track_completion_call
from src.proceedings.errors import (
    CompletionParseError,
    ContentFilterError,
    ProviderError,
)
from src.proceedings.services.usage import NullUsageRecorder, UsageRecorder
from src.proceedings.transcripts.schemas import UsageEvent

logger = structlog.get_logger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)

PROVIDER = "llm"
SCHEMA_REASKS = 2


def _finish_reason(completion: Any) -> str | None:
    """Extract finish_reason from a raw completion, tolerating odd shapes."""
    try:
        return completion.choices[0].finish_reason
    except (AttributeError, IndexError, TypeError):
        return None


def _usage_counts(completion: Any) -> tuple[int | None, int | None, int | None]:
    usage = getattr(completion, "usage", None)
    if usage is None:
        return None, None, None
    prompt = getattr(usage, "prompt_tokens", None)
    output = getattr(usage, "completion_tokens", None)
    total = getattr(usage, "total_tokens", None)
    if total is None and prompt is not None and output is not None:
        total = prompt + output
    return prompt, output, total


class CompletionService:
    """Structured completion client.

    Args:
        settings: Application settings. Uses get_settings() if None.
        usage_recorder: Receives one UsageEvent per call that names a
            transcript. Defaults to a recorder that drops events.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        usage_recorder: UsageRecorder | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._usage_recorder = usage_recorder or NullUsageRecorder()
        self._model = self._settings.LLM_MODEL

    @property
    def model(self) -> str:
        return self._model

    def _provider_kwargs(self) -> dict[str, Any]:
        """Credentials for the configured model family."""
        settings = self._settings
        kwargs: dict[str, Any] = {"timeout": settings.LLM_TIMEOUT}
        if self._model.startswith("azure/"):
            if settings.AZURE_API_KEY:
                kwargs["api_key"] = settings.AZURE_API_KEY
            if settings.AZURE_API_BASE:
                kwargs["api_base"] = settings.AZURE_API_BASE
            kwargs["api_version"] = settings.AZURE_API_VERSION
        elif settings.OPENAI_API_KEY:
            kwargs["api_key"] = settings.OPENAI_API_KEY
        return kwargs

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        response_model: type[ResponseT],
        *,
        operation: str,
        stage: str,
        transcript_id: str | None = None,
    ) -> ResponseT:
        """Run one completion and parse it into ``response_model``.

        Args:
            system_prompt: Instructions for the model.
            user_prompt: The transcript material to work on.
            response_model: Pydantic model the answer must conform to.
            operation: Usage operation name (e.g. ``define_topics``).
            stage: Pipeline stage the call belongs to.
            transcript_id: Transcript the call is made for, if any.

        Returns:
            Parsed ``response_model`` instance.

        Raises:
            ContentFilterError: The provider refused to answer.
            CompletionParseError: The answer never matched the schema.
            ProviderError: Network or API failure.
        """
        import instructor
        import litellm
        from instructor.exceptions import InstructorRetryException

        client = instructor.from_litellm(litellm.acompletion)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

        started = time.perf_counter()
        completion: Any = None
        try:
            async with track_completion_call(operation) as tracker:
                try:
                    parsed, completion = await client.chat.completions.create_with_completion(
                        model=self._model,
                        response_model=response_model,
                        messages=messages,
                        max_retries=SCHEMA_REASKS,
                        **self._provider_kwargs(),
                    )
                except litellm.ContentPolicyViolationError as exc:
                    raise ContentFilterError(str(exc)) from exc
                except InstructorRetryException as exc:
                    completion = getattr(exc, "last_completion", None)
                    if _finish_reason(completion) == "content_filter" or isinstance(
                        exc.__cause__, litellm.ContentPolicyViolationError
                    ):
                        raise ContentFilterError(str(exc)) from exc
                    raise CompletionParseError(
                        f"{response_model.__name__}: {exc}"
                    ) from exc
                except ValidationError as exc:
                    raise CompletionParseError(
                        f"{response_model.__name__}: {exc}"
                    ) from exc
                except (
                    litellm.APIConnectionError,
                    litellm.Timeout,
                    litellm.RateLimitError,
                    litellm.ServiceUnavailableError,
                    litellm.InternalServerError,
                    litellm.APIError,
                    litellm.BadRequestError,
                    litellm.AuthenticationError,
                ) as exc:
                    raise ProviderError(PROVIDER, str(exc)) from exc

                prompt_tokens, completion_tokens, _ = _usage_counts(completion)
                tracker["prompt_tokens"] = prompt_tokens or 0
                tracker["completion_tokens"] = completion_tokens or 0
        except Exception as exc:
            await self._record(
                transcript_id, stage, operation, started, completion, error=exc
            )
            logger.warning(
                "completion.failed",
                operation=operation,
                transcript_id=transcript_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        await self._record(transcript_id, stage, operation, started, completion)
        logger.debug(
            "completion.succeeded",
            operation=operation,
            transcript_id=transcript_id,
            model=self._model,
        )
        return parsed

    async def _record(
        self,
        transcript_id: str | None,
        stage: str,
        operation: str,
        started: float,
        completion: Any,
        error: Exception | None = None,
    ) -> None:
        if transcript_id is None:
            return
        input_tokens, output_tokens, total_tokens = _usage_counts(completion)
        await self._usage_recorder.record(
            UsageEvent(
                transcript_id=transcript_id,
                provider=PROVIDER,
                stage=stage,
                operation=operation,
                status="error" if error else "success",
                model=self._model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=total_tokens,
                duration_ms=int((time.perf_counter() - started) * 1000),
                error_message=str(error) if error else None,
            )
        )
