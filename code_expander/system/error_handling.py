"""
Error taxonomy for the code expansion pipeline.

Only two kinds of failure ever leave the pipeline as exceptions: a value set with no codes
(PreconditionError) and misconfiguration. Everything raised by a single remote call is a
TerminologyServerError, split into transport and protocol failures so callers can log them
with context and carry on with whatever the other sources produced.
"""

import logging
import traceback
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification and user messaging."""
    CONFIGURATION = "configuration"
    DATA_VALIDATION = "data_validation"
    FILE_OPERATION = "file_operation"
    TERMINOLOGY_SERVER = "terminology_server"
    EXPANSION = "expansion"
    SYSTEM = "system"


class ResolutionStatus(Enum):
    """Outcome of a single resolver attempt."""
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    ERROR = "error"


class FailureReason(Enum):
    """Why a source code is missing from the expanded concept set."""
    NO_TRANSLATION = "no_translation"
    NOT_IN_EXPANSION = "not_in_expansion"

    @property
    def description(self) -> str:
        return _FAILURE_DESCRIPTIONS[self]


_FAILURE_DESCRIPTIONS = {
    FailureReason.NO_TRANSLATION: "No translation found from ConceptMap",
    FailureReason.NOT_IN_EXPANSION: "Not found in terminology server expansion",
}

REFSET_UNAVAILABLE_MESSAGE = (
    "Reference set not found. This reference set is not available in the terminology server."
)


@dataclass
class ErrorContext:
    """Context information for errors."""
    operation: str
    code: Optional[str] = None
    url: Optional[str] = None
    file_path: Optional[str] = None
    user_data: Optional[Dict[str, Any]] = None


class ExpanderError(Exception):
    """Base exception class for the code expander."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context
        self.original_exception = original_exception
        super().__init__(self.message)

    def get_user_friendly_message(self) -> str:
        friendly_messages = {
            ErrorCategory.CONFIGURATION: "The terminology server is not configured. Please check the credentials in secrets or environment.",
            ErrorCategory.DATA_VALIDATION: "The value set contains invalid or unexpected values. Please review your input.",
            ErrorCategory.FILE_OPERATION: "A local RF2 snapshot file could not be read. Please check the file location.",
            ErrorCategory.TERMINOLOGY_SERVER: "Terminology server connection issue. Please check your credentials and connection.",
            ErrorCategory.EXPANSION: "The value set could not be expanded. Please review the codes it contains.",
            ErrorCategory.SYSTEM: "A system error occurred. Please try again or contact support.",
        }
        return friendly_messages.get(self.category, self.message)

    def get_technical_details(self) -> Dict[str, Any]:
        details = {
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
        }

        if self.context:
            details["context"] = {
                "operation": self.context.operation,
                "code": self.context.code,
                "url": self.context.url,
                "file_path": self.context.file_path,
            }

        if self.original_exception:
            details["original_exception"] = {
                "type": type(self.original_exception).__name__,
                "message": str(self.original_exception),
                "traceback": traceback.format_exc(),
            }

        return details


class ConfigurationError(ExpanderError):
    """Missing or unusable configuration, such as absent OAuth credentials."""

    def __init__(self, message: str, setting_name: str = None, **kwargs):
        self.setting_name = setting_name
        super().__init__(message=message, category=ErrorCategory.CONFIGURATION, **kwargs)


class PreconditionError(ExpanderError):
    """Raised before expansion starts when the input is unusable."""

    def __init__(self, message: str, value_set_id: str = None, **kwargs):
        self.value_set_id = value_set_id
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message=message, category=ErrorCategory.DATA_VALIDATION, **kwargs)


class RF2FileError(ExpanderError):
    """An RF2 snapshot file exists but could not be parsed."""

    def __init__(self, message: str, file_path: str = None, **kwargs):
        self.file_path = file_path
        super().__init__(message=message, category=ErrorCategory.FILE_OPERATION, **kwargs)


class TerminologyServerError(ExpanderError):
    """Failure of a single call to the FHIR terminology server."""

    def __init__(
        self,
        message: str,
        error_type: str = None,
        api_response: Optional[Dict] = None,
        user_guidance: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        self.error_type = error_type
        self.api_response = api_response
        self.user_guidance = user_guidance
        self.operation = operation
        super().__init__(message=message, category=ErrorCategory.TERMINOLOGY_SERVER, **kwargs)

    def get_user_friendly_message(self) -> str:
        if self.user_guidance:
            return self.user_guidance

        friendly_messages = {
            "authentication_failed": "Authentication with the terminology server failed. Please check your credentials.",
            "code_not_found": "The code was not found on the terminology server.",
            "invalid_request": "The terminology server rejected the request. Please check the codes involved.",
            "server_error": "The terminology server is experiencing issues. Please try again later.",
            "rate_limit_exceeded": "Too many requests sent to the server. Please wait a moment and try again.",
            "connection_error": "Unable to connect to the terminology server. Please check your internet connection.",
            "timeout_error": "Request to the terminology server timed out. Please try again.",
            "malformed_response": "Received an unexpected response from the terminology server. Please try again.",
        }

        return friendly_messages.get(
            self.error_type,
            "An error occurred while communicating with the terminology server. Please try again.",
        )

    def get_technical_details(self) -> Dict[str, Any]:
        details = super().get_technical_details()
        details.update(
            {
                "error_type": self.error_type,
                "operation": self.operation,
                "api_response": self.api_response,
                "user_guidance": self.user_guidance,
            }
        )
        return details


class RemoteTransportError(TerminologyServerError):
    """The request never produced an HTTP response (timeout, DNS, refused connection)."""


class RemoteProtocolError(TerminologyServerError):
    """The server answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int = None, **kwargs):
        self.status_code = status_code
        super().__init__(message=message, **kwargs)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class ErrorHandler:
    """Centralised error logging for batch operations."""

    def __init__(self, logger_name: str = "code_expander"):
        self.logger = logging.getLogger(logger_name)
        self._error_count = 0
        self._session_errors: List[Dict[str, Any]] = []

    @property
    def error_count(self) -> int:
        return self._error_count

    def handle_error(self, error: ExpanderError) -> None:
        technical_details = error.get_technical_details()
        self._error_count += 1
        self._session_errors.append(
            {"timestamp": datetime.now().isoformat(), "error": error, "details": technical_details}
        )

        if error.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(f"Critical error: {technical_details}")
        elif error.severity == ErrorSeverity.HIGH:
            self.logger.error(f"High severity error: {technical_details}")
        elif error.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(f"Medium severity error: {technical_details}")
        else:
            self.logger.info(f"Low severity error: {technical_details}")

    def log_exception(
        self,
        operation: str,
        exception: Exception,
        context: Optional[ErrorContext] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    ) -> ExpanderError:
        if isinstance(exception, ExpanderError):
            self.handle_error(exception)
            return exception

        expander_error = ExpanderError(
            message=f"Error in {operation}: {str(exception)}",
            category=self._categorize_exception(exception),
            severity=severity,
            context=context or create_error_context(operation),
            original_exception=exception,
        )
        self.handle_error(expander_error)
        return expander_error

    def _categorize_exception(self, exception: Exception) -> ErrorCategory:
        category_map = {
            "FileNotFoundError": ErrorCategory.FILE_OPERATION,
            "PermissionError": ErrorCategory.FILE_OPERATION,
            "IsADirectoryError": ErrorCategory.FILE_OPERATION,
            "OSError": ErrorCategory.FILE_OPERATION,
            "UnicodeDecodeError": ErrorCategory.FILE_OPERATION,
            "ValueError": ErrorCategory.DATA_VALIDATION,
            "TypeError": ErrorCategory.DATA_VALIDATION,
            "KeyError": ErrorCategory.DATA_VALIDATION,
        }
        return category_map.get(type(exception).__name__, ErrorCategory.SYSTEM)


def create_error_context(operation: str, code: str = None, url: str = None, **kwargs) -> ErrorContext:
    """Helper function to create error context."""
    return ErrorContext(
        operation=operation,
        code=code,
        url=url,
        file_path=kwargs.get("file_path"),
        user_data=kwargs.get("user_data"),
    )
