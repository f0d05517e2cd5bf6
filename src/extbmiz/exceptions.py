"""
Error types raised by extbmiz.

All errors derive from ValueError so callers that already guard numeric
input with ``except ValueError`` keep working. RecordError subclasses are
per-record: the batch engine records them against the offending row and
moves on. ReferenceTableLoadError and a MissingField raised while
validating column mappings abort the run before any record is processed.
"""

from typing import Optional


class ExtBMIZError(ValueError):
    """Base class for all extbmiz errors."""


class ReferenceTableLoadError(ExtBMIZError):
    """Reference table could not be read or failed validation."""


class RecordError(ExtBMIZError):
    """
    Failure tied to a single input record.

    Args:
        message: Human-readable description
        field: Canonical field name the failure relates to, if any
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class MissingField(RecordError):
    """A required canonical field has no source column or no value."""


class InvalidSex(RecordError):
    """Sex code is missing or not one of the canonical codes (1, 2)."""


class InvalidAge(RecordError):
    """Age is missing, non-positive or outside the tabulated reference range."""


class MissingMeasurement(RecordError):
    """A measurement required for the computation is absent or unusable."""
