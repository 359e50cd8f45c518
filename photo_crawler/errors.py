"""
Error taxonomy for the photo pipeline.

Only ExtractionError and ConfigurationError abort a run. The others are caught
at the candidate or venue boundary and folded into a per-venue result.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ExtractionError(PipelineError):
    """External dataset or extraction tool failed. Fatal."""


class ConfigurationError(PipelineError):
    """Required input, column or credential is missing. Fatal."""


class FetchError(PipelineError):
    """Network failure or timeout for one candidate."""


class ValidationError(PipelineError):
    """Format, size or license rejection. Always carries a reason."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PersistenceError(PipelineError):
    """Upload or record creation failed for one venue."""
