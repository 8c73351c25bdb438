"""Langfuse tracing for completion calls.

Integrates with LiteLLM via success/failure callbacks so every completion
made by the pipeline is traced. When Langfuse keys are not configured,
initialization is a no-op and the pipeline runs untraced.
"""

from __future__ import annotations

import os

import structlog

from src.proceedings.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def init_langfuse(settings: Settings | None = None) -> bool:
    """Initialize Langfuse tracing on LiteLLM.

    Registers "langfuse" in litellm.success_callback and
    litellm.failure_callback, and exports the LANGFUSE_* settings as
    environment variables for the Langfuse SDK unless already set.

    Args:
        settings: Application settings. Uses get_settings() if None.

    Returns:
        True if Langfuse was initialized, False if skipped.
    """
    if settings is None:
        settings = get_settings()

    if not settings.LANGFUSE_PUBLIC_KEY or not settings.LANGFUSE_SECRET_KEY:
        logger.info(
            "langfuse.skipped",
            reason="LANGFUSE_PUBLIC_KEY or LANGFUSE_SECRET_KEY not configured",
        )
        return False

    # Explicit env vars take precedence over Settings
    _set_env_if_missing("LANGFUSE_PUBLIC_KEY", settings.LANGFUSE_PUBLIC_KEY)
    _set_env_if_missing("LANGFUSE_SECRET_KEY", settings.LANGFUSE_SECRET_KEY)
    _set_env_if_missing("LANGFUSE_HOST", settings.LANGFUSE_HOST)

    import litellm

    if "langfuse" not in (litellm.success_callback or []):
        litellm.success_callback = litellm.success_callback or []
        litellm.success_callback.append("langfuse")

    if "langfuse" not in (litellm.failure_callback or []):
        litellm.failure_callback = litellm.failure_callback or []
        litellm.failure_callback.append("langfuse")

    logger.info("langfuse.initialized", host=settings.LANGFUSE_HOST)
    return True


def _set_env_if_missing(key: str, value: str) -> None:
    """Set an environment variable only if it is not already set."""
    if not os.environ.get(key):
        os.environ[key] = value
