"""
Error kinds shared across the validation workflow.

A statistic that cannot be computed for a group (too few observations) is
*not* an error: it is recorded as a NaN marker by the summary functions, see
``summary_statistics.STATISTIC_UNDEFINED``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ConfigurationError(Exception):
    """Raised when configuration is invalid or contradictory.

    Always raised before any random draw is made.
    """
    pass


class InferenceFailure(Exception):
    """Raised when the external inference engine fails, times out or
    reports non-convergence.

    Attributes:
        diagnostics: Engine-reported diagnostics (R-hat values, divergence
            counts, the engine's own diagnostic text, ...).
    """

    def __init__(self, message: str, diagnostics: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.diagnostics: Dict[str, Any] = dict(diagnostics or {})


class ShapeMismatchError(Exception):
    """Raised when posterior arrays are structurally inconsistent with the
    model specification (missing parameter, disagreeing draw counts, wrong
    per-group width)."""
    pass


class RunCancelled(Exception):
    """Raised when a caller-supplied cancellation signal is observed at a
    chain, replicate or iteration boundary."""
    pass
