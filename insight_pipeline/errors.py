"""
Pipeline error taxonomy
------------------------
Every invariant violation raised by the core carries a stable string `code`
and a process `exit_code` so the CLI can fail loudly and specifically.

Coverage findings are NOT exceptions - they live in schemas.py and are
reported by the Coverage Verifier.
"""
from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for all errors surfaced to pipeline callers."""

    code: str = "pipeline_error"
    exit_code: int = 1

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


# --- Configuration / invariant violations (fatal to the operation) -----------

class InvalidWindowError(PipelineError):
    code = "invalid_window"
    exit_code = 10


class DoubleDispatchError(PipelineError):
    code = "double_dispatch"
    exit_code = 11


class InvalidTransitionError(PipelineError):
    code = "invalid_transition"
    exit_code = 12


class CycleError(PipelineError):
    code = "cycle"
    exit_code = 14


class InvalidLinkError(PipelineError):
    code = "invalid_link"
    exit_code = 15


class ConfigDriftError(PipelineError):
    code = "config_drift"
    exit_code = 16


class SourceDriftError(ConfigDriftError):
    """A registered document's line count changed after chunking began."""

    code = "source_drift"


# --- Recoverable ---------------------------------------------------------------

class QuotaNotMetError(PipelineError):
    """Expected during normal operation: add verification records and retry."""

    code = "quota_not_met"
    exit_code = 13


# --- Lookups / input ------------------------------------------------------------

class UnknownEntityError(PipelineError, KeyError):
    code = "unknown_entity"
    exit_code = 17

    def __str__(self) -> str:
        return self.message


class UnknownDocumentError(UnknownEntityError):
    code = "unknown_document"


class UnknownChunkError(UnknownEntityError):
    code = "unknown_chunk"


class UnknownInsightError(UnknownEntityError):
    code = "unknown_insight"


class InvalidInsightError(PipelineError, ValueError):
    code = "invalid_insight"
    exit_code = 18


class ExtractorError(PipelineError):
    """The external Extractor failed or returned an unusable payload."""

    code = "extractor_error"
    exit_code = 19
