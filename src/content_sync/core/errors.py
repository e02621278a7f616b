"""Error handling with RFC 7807 Problem Details support.

Every component error carries its kind (the ErrorCode), the source it
relates to and the operation that failed, so the sync orchestrator can
decide between retrying, skipping an item and failing the run.
"""

from enum import Enum
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    """Standardized error codes for the sync engine."""

    VALIDATION_ERROR = "validation_error"
    DATABASE_ERROR = "database_error"
    REDIS_ERROR = "redis_error"
    STORAGE_ERROR = "storage_error"
    INTERNAL_ERROR = "internal_error"
    # Sources and adapters
    SOURCE_NOT_FOUND = "source_not_found"
    SOURCE_AUTH_FAILED = "source_auth_failed"
    SOURCE_SYNC_FAILED = "source_sync_failed"
    ADAPTER_NOT_FOUND = "adapter_not_found"
    # Content
    ITEM_NOT_FOUND = "item_not_found"
    PROCESSING_FAILED = "processing_failed"
    CLUSTER_NOT_FOUND = "cluster_not_found"
    # Credentials and webhooks
    CREDENTIAL_ERROR = "credential_error"
    INVALID_SIGNATURE = "invalid_signature"


class AppError(Exception):
    """
    Structured application error following RFC 7807 Problem Details.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        status: HTTP status code
        details: Additional error context
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status: int = 500,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    @property
    def kind(self) -> ErrorCode:
        """Error kind used by recovery policies."""
        return self.code

    def to_problem_detail(self, instance: str) -> dict[str, Any]:
        """
        Convert error to RFC 7807 Problem Details format.

        Args:
            instance: The request path where the error occurred

        Returns:
            Dictionary in RFC 7807 format
        """
        problem = {
            "type": f"https://api.example.com/errors/{self.code.value.replace('_', '-')}",
            "title": self.code.value.replace("_", " ").title(),
            "status": self.status,
            "detail": self.message,
            "instance": instance,
        }
        if self.details:
            problem["errors"] = self.details
        return problem


class ValidationError(AppError):
    """Request validation error."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=f"Validation failed for '{field}': {message}",
            status=400,
            details={"field": field},
        )


class SourceError(AppError):
    """Base class for errors raised while talking to a content source."""

    def __init__(
        self,
        code: ErrorCode,
        source_id: Optional[str],
        operation: str,
        message: str,
        status: int = 500,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.source_id = source_id
        self.operation = operation
        merged = {"source_id": source_id, "operation": operation}
        merged.update(details or {})
        super().__init__(code=code, message=message, status=status, details=merged)


class ContentSourceAuthError(SourceError):
    """Credentials for a source are invalid, expired or revoked."""

    def __init__(self, source_id: Optional[str], operation: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.SOURCE_AUTH_FAILED,
            source_id=source_id,
            operation=operation,
            message=f"Authentication failed during {operation}: {reason}",
            status=401,
        )


class ContentSourceSyncError(SourceError):
    """Adapter-level fetch failure (network, rate limit, malformed response)."""

    def __init__(
        self,
        source_id: Optional[str],
        operation: str,
        reason: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ) -> None:
        self.retryable = retryable
        self.status_code = status_code
        details: dict[str, Any] = {"retryable": retryable}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            code=ErrorCode.SOURCE_SYNC_FAILED,
            source_id=source_id,
            operation=operation,
            message=f"Sync failed during {operation}: {reason}",
            status=502,
            details=details,
        )


class ContentSourceNotFoundError(AppError):
    """Content source does not exist."""

    def __init__(self, source_id: str) -> None:
        super().__init__(
            code=ErrorCode.SOURCE_NOT_FOUND,
            message=f"Content source '{source_id}' not found",
            status=404,
            details={"source_id": source_id},
        )


class ContentItemNotFoundError(AppError):
    """Content item does not exist."""

    def __init__(self, item_id: str) -> None:
        super().__init__(
            code=ErrorCode.ITEM_NOT_FOUND,
            message=f"Content item '{item_id}' not found",
            status=404,
            details={"item_id": item_id},
        )


class ContentAdapterNotFoundError(AppError):
    """No adapter is registered for a source type."""

    def __init__(self, source_type: str, source_id: Optional[str] = None) -> None:
        super().__init__(
            code=ErrorCode.ADAPTER_NOT_FOUND,
            message=f"No adapter registered for source type '{source_type}'",
            status=400,
            details={"source_type": source_type, "source_id": source_id},
        )


class ContentProcessingError(AppError):
    """AI enrichment of a single content item failed."""

    def __init__(self, item_id: str, stage: str, reason: str) -> None:
        self.item_id = item_id
        self.stage = stage
        super().__init__(
            code=ErrorCode.PROCESSING_FAILED,
            message=f"Processing failed at {stage}: {reason}",
            status=500,
            details={"item_id": item_id, "operation": stage},
        )


class TopicClusterNotFoundError(AppError):
    """Topic cluster does not exist."""

    def __init__(self, cluster_id: str) -> None:
        super().__init__(
            code=ErrorCode.CLUSTER_NOT_FOUND,
            message=f"Topic cluster '{cluster_id}' not found",
            status=404,
            details={"cluster_id": cluster_id},
        )


class DatabaseError(AppError):
    """Database operation error."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        super().__init__(
            code=ErrorCode.DATABASE_ERROR,
            message=f"Database error during {operation}: {reason}",
            status=500,
            details={"operation": operation},
        )


class RedisError(AppError):
    """Redis operation error."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        super().__init__(
            code=ErrorCode.REDIS_ERROR,
            message=f"Redis error during {operation}: {reason}",
            status=500,
            details={"operation": operation},
        )


class StorageError(AppError):
    """Error during file storage operations."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        super().__init__(
            code=ErrorCode.STORAGE_ERROR,
            message=f"Storage error during {operation}: {reason}",
            status=500,
            details={"operation": operation},
        )


class CredentialError(AppError):
    """Credential envelope could not be encrypted or decrypted."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        super().__init__(
            code=ErrorCode.CREDENTIAL_ERROR,
            message=f"Credential error during {operation}: {reason}",
            status=500,
            details={"operation": operation},
        )


class WebhookSignatureError(AppError):
    """Webhook signature verification failed."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_SIGNATURE,
            message=f"Invalid {provider} webhook signature: {reason}",
            status=401,
            details={"provider": provider},
        )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """
    FastAPI exception handler for AppError.

    Converts AppError to RFC 7807 Problem Details JSON response.

    Args:
        request: The FastAPI request object
        exc: The AppError exception

    Returns:
        JSONResponse with Problem Details format
    """
    return JSONResponse(
        status_code=exc.status,
        content=exc.to_problem_detail(str(request.url.path)),
    )
