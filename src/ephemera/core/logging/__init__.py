from .context import RunLogContext, current_log_context, log_context
from .json_formatter import RunJsonFormatter
from .redact import redact_args, redact_string
from .setup import configure_logging

__all__ = [
    "RunJsonFormatter",
    "RunLogContext",
    "configure_logging",
    "current_log_context",
    "log_context",
    "redact_args",
    "redact_string",
]
