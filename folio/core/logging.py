"""Structured logging with secret redaction.

Provides JSON-formatted logs with:
- Correlation IDs (request_id, preview_id)
- Automatic secret redaction for API keys and tokens
"""
import logging
import sys
import json
import re
from datetime import datetime, timezone

# === SECRET REDACTION PATTERNS ===
# Exchange/wallet connections carry API keys, and the LLM adapters carry an
# OpenAI key; none of them may reach the log stream.

SECRET_PATTERNS = [
    # OpenAI API keys (sk-... including sk-proj-...)
    (
        r'\bsk-[a-zA-Z0-9_-]{20,}\b',
        '***OPENAI_KEY_REDACTED***'
    ),
    # Bearer tokens and token=value pairs
    (
        r'(?i)(bearer\s+|token["\']?\s*[:=]\s*["\']?)([a-zA-Z0-9_\-\.\/+]{20,})["\']?',
        r'\1***TOKEN_REDACTED***'
    ),
    # apiKey / apiSecret fields on exchange connections (JSON or query form)
    (
        r'(?i)(["\']?api[_-]?(?:key|secret)["\']?\s*[:=]\s*["\']?)([^\s"\',}]{8,})',
        r'\1***REDACTED***'
    ),
    # Environment variable format (OPENAI_API_KEY=value, BINANCE_SECRET=value, ...)
    (
        r'(?i)([A-Z_]*API_KEY|[A-Z_]*SECRET)\s*=\s*([a-zA-Z0-9_\-\.\/+]{16,})',
        r'\1=***REDACTED***'
    ),
    # Password patterns
    (
        r'(?i)(password|passwd|pwd)["\']?\s*[:=]\s*["\']?([^\s"\']+)["\']?',
        r'\1=***PASSWORD_REDACTED***'
    ),
]

_COMPILED_PATTERNS = [(re.compile(pattern), replacement) for pattern, replacement in SECRET_PATTERNS]

# Optional LogRecord attributes copied into the JSON payload when present
_OPTIONAL_FIELDS = ("request_id", "preview_id", "event", "elapsed_ms", "error_class", "seq")


def redact_secrets(text: str) -> str:
    """Redact secrets from text using pattern matching.

    Args:
        text: Input text that may contain secrets

    Returns:
        Text with secrets replaced by redaction markers
    """
    if not text:
        return text

    result = str(text)
    for pattern, replacement in _COMPILED_PATTERNS:
        result = pattern.sub(replacement, result)

    return result


class SecretRedactionFilter(logging.Filter):
    """Logging filter that redacts secrets from log messages before formatting."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_secrets(str(record.msg))

        # Only redact string args so %d/%f specifiers keep working
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: redact_secrets(v) if isinstance(v, str) else v
                               for k, v in record.args.items()}
            elif isinstance(record.args, (tuple, list)):
                record.args = tuple(
                    redact_secrets(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter with correlation IDs and elapsed time tracking."""

    def format(self, record):
        message = redact_secrets(record.getMessage())

        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
            "module": record.module,
            "function": record.funcName,
        }

        for field in _OPTIONAL_FIELDS:
            value = getattr(record, field, None)
            if value not in (None, ""):
                log_data[field] = value

        if record.exc_info:
            exception_text = self.formatException(record.exc_info)
            log_data["exception"] = redact_secrets(exception_text)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO"):
    """Setup logging with secret redaction.

    Configures structured JSON logging on stdout and replaces any handlers
    already attached to the root logger.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(SecretRedactionFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with secret redaction enabled.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance with secret redaction
    """
    return logging.getLogger(name)
