"""Custom exceptions for the vault search service.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Retrieval tiers raise these; the
query router turns every one of them into a fallback to the next tier.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Vault errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_PAYLOAD_INVALID = 1002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_LIST_FAILED = 4002
    STORAGE_CONNECTION_FAILED = 4004

    # Search errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001

    # Embedding store errors (8xxx)
    STORE_NOT_CONFIGURED = 8001
    STORE_EMPTY = 8002
    DIMENSION_MISMATCH = 8003

    # Query encoder errors (85xx)
    ENCODER_DISABLED = 8501
    EMBEDDING_MODEL_LOAD_FAILED = 8502
    EMBEDDING_INFERENCE_FAILED = 8503
    EMBEDDING_TIMEOUT = 8504

    # Remote search errors (9xxx)
    REMOTE_SERVER_ERROR = 9001
    REMOTE_TIMEOUT = 9002
    REMOTE_NETWORK_ERROR = 9003
    REMOTE_RETRIES_EXHAUSTED = 9004


class VaultSearchError(Exception):
    """Base exception for all vault search errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(VaultSearchError):
    """Raised when the vault reports a missing file or directory."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(
            message or f"Vault path '{path}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"path": path},
        )
        self.path = path


class StorageError(VaultSearchError):
    """Raised for vault listing/fetch errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            details["path"] = path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class EmbeddingStoreError(VaultSearchError):
    """Raised when the precomputed embedding store cannot serve vectors."""

    def __init__(
        self,
        message: str,
        directory: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORE_EMPTY,
    ):
        details = {}
        if directory:
            details["directory"] = directory

        super().__init__(message, code=code, details=details)
        self.directory = directory


class EmbeddingError(VaultSearchError):
    """Raised when the query encoder cannot produce a vector."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.EMBEDDING_INFERENCE_FAILED,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class RemoteSearchError(VaultSearchError):
    """Raised when the remote semantic-search endpoint fails transiently."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: ErrorCode = ErrorCode.REMOTE_SERVER_ERROR,
        original_error: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {}
        if status is not None:
            details["status"] = status
        if original_error:
            details["original_error"] = (
                str(original_error)[:200] or original_error.__class__.__name__
            )

        super().__init__(message, code=code, details=details)
        self.status = status
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        """Whether another attempt may succeed (5xx, network, timeout)."""
        return self.code in (
            ErrorCode.REMOTE_SERVER_ERROR,
            ErrorCode.REMOTE_TIMEOUT,
            ErrorCode.REMOTE_NETWORK_ERROR,
        )


class ConfigurationError(VaultSearchError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(VaultSearchError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
