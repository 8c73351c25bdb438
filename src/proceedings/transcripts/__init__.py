"""Transcript domain -- schemas, persistence models, repository and state.

Provides the Transcript aggregate (Pydantic schemas), SQLAlchemy models,
TranscriptRepository for async CRUD and the compare-and-swap pipeline
lock, plus the status state machine.
"""
