"""Structured error codes for portfolio API failures.

Every failure that reaches a caller carries one of these codes, an HTTP
status, a human-readable message and (where useful) a remediation hint.
"""
from enum import Enum
from typing import Optional


class PortfolioErrorCode(str, Enum):
    """Error codes for portfolio mutations and command parsing."""

    # Request errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Write admission
    ADMISSION_REJECTED = "ADMISSION_REJECTED"
    PREVIEW_NOT_PENDING = "PREVIEW_NOT_PENDING"

    # Command parser upstream
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_CODE_STATUS = {
    PortfolioErrorCode.VALIDATION_ERROR: 400,
    PortfolioErrorCode.NOT_FOUND: 404,
    PortfolioErrorCode.ADMISSION_REJECTED: 409,
    PortfolioErrorCode.PREVIEW_NOT_PENDING: 409,
    PortfolioErrorCode.UPSTREAM_UNAVAILABLE: 503,
    PortfolioErrorCode.MODEL_NOT_FOUND: 404,
    PortfolioErrorCode.INTERNAL_ERROR: 500,
}


# Error code to user-friendly message mapping
ERROR_CODE_MESSAGES = {
    PortfolioErrorCode.VALIDATION_ERROR: {
        "message": "Request validation failed",
        "remediation": "Check the request fields and try again."
    },
    PortfolioErrorCode.NOT_FOUND: {
        "message": "Resource not found",
        "remediation": "Verify the id; it may have been deleted."
    },
    PortfolioErrorCode.ADMISSION_REJECTED: {
        "message": "Write rejected by sync admission guard",
        "remediation": "Inspect the reported counts. If the loss is intentional, use PUT /api/v1/db to replace the document explicitly."
    },
    PortfolioErrorCode.PREVIEW_NOT_PENDING: {
        "message": "Preview is no longer pending",
        "remediation": "Submit the command again to get a fresh preview."
    },
    PortfolioErrorCode.UPSTREAM_UNAVAILABLE: {
        "message": "Command parser is unavailable",
        "remediation": "Check that the LLM provider is running and reachable, then retry."
    },
    PortfolioErrorCode.MODEL_NOT_FOUND: {
        "message": "Command parser model not found",
        "remediation": "Pull the configured model (ollama pull <model>) or change OLLAMA_MODEL."
    },
    PortfolioErrorCode.INTERNAL_ERROR: {
        "message": "An unexpected error occurred",
        "remediation": "Check system logs for details."
    },
}


class PortfolioError(Exception):
    """Exception with structured error code and message."""

    def __init__(
        self,
        error_code: PortfolioErrorCode,
        message: Optional[str] = None,
        remediation: Optional[str] = None,
        details: Optional[dict] = None
    ):
        """Initialize portfolio error.

        Args:
            error_code: Structured error code
            message: Human-readable error message (defaults to the code's message)
            remediation: Optional remediation steps (defaults to the code's remediation)
            details: Optional additional error details
        """
        defaults = get_error_message(error_code)
        self.error_code = error_code
        self.message = message or defaults["message"]
        self.remediation = remediation if remediation is not None else defaults["remediation"]
        self.details = details or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return ERROR_CODE_STATUS.get(self.error_code, 500)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.error_code.value,
            "message": self.message,
            "remediation": self.remediation,
            "details": self.details
        }


def get_error_message(error_code: PortfolioErrorCode) -> dict:
    """Get user-friendly message and remediation for error code."""
    return ERROR_CODE_MESSAGES.get(
        error_code,
        {
            "message": "An error occurred",
            "remediation": "Contact support if the issue persists."
        }
    )


def validation_error(message: str, **details) -> PortfolioError:
    return PortfolioError(PortfolioErrorCode.VALIDATION_ERROR, message, details=details or None)


def not_found(message: str, **details) -> PortfolioError:
    return PortfolioError(PortfolioErrorCode.NOT_FOUND, message, details=details or None)
