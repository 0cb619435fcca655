"""
ADAPT-Remediate: automated, reversible remediation of detected errors.
"""
from .version import __version__, get_version_info
from .logging_context import (
    get_logger,
    set_context,
    get_context,
    clear_context,
    LoggingContext,
)
from .metrics import (
    track_remediation_total,
    track_remediation_duration,
    track_rollback,
    track_active_attempts,
    get_metrics_text,
)

__all__ = [
    "__version__",
    "get_version_info",
    "get_logger",
    "set_context",
    "get_context",
    "clear_context",
    "LoggingContext",
    "track_remediation_total",
    "track_remediation_duration",
    "track_rollback",
    "track_active_attempts",
    "get_metrics_text",
]
