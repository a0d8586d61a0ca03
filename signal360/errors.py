"""Exception hierarchy for Signal360.

``InsufficientDataError`` and ``InvalidInputError`` abort the computation
that raised them.  ``UpstreamFailureError`` aborts a whole synthesis
request.  Data-quality problems are not exceptions; they are recorded on a
``DataQualityReport`` and only lower confidence.
"""

from __future__ import annotations

from typing import Optional


class Signal360Error(Exception):
    """Base class for all Signal360 errors. Carries a stable error code."""

    code = "PROCESSING_ERROR"

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class InsufficientDataError(Signal360Error):
    """Too few bars for technical analysis to proceed."""

    code = "INSUFFICIENT_DATA"


class InvalidInputError(Signal360Error):
    """A field is outside its declared range or type."""

    code = "INVALID_PARAMETER"


class UpstreamFailureError(Signal360Error):
    """A source collaborator produced no AnalysisOutput."""

    code = "UPSTREAM_FAILURE"

    def __init__(self, source: str, message: str, details: Optional[str] = None) -> None:
        super().__init__(message, details)
        self.source = source

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["source"] = self.source
        return out


class ConfigurationError(Signal360Error):
    """Invalid weighting table or engine configuration."""

    code = "CONFIGURATION_ERROR"
