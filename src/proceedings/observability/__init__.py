"""Observability package: Langfuse tracing for completion calls.

Prometheus metrics live in ``src.proceedings.core.monitoring``.
"""

from __future__ import annotations


def __getattr__(name: str):
    if name == "init_langfuse":
        from src.proceedings.observability.tracer import init_langfuse
        return init_langfuse
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["init_langfuse"]
