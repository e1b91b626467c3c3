"""
Exception hierarchy for the knowledge subsystem
5 error types, each with a status code the surrounding application can map to a response
"""

from typing import Optional, Dict, Any


class KnowledgeBaseException(Exception):
    """
    Base exception for all knowledge subsystem errors.
    Includes a status code and structured error context.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize exception.

        Args:
            message: Human-readable error message
            status_code: HTTP-style status code
            error_code: Machine-readable error code
            context: Additional error context
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dict for JSON responses and batch reports"""
        return {
            "error": {
                "message": self.message,
                "code": self.error_code,
                "status": self.status_code,
                "context": self.context,
            }
        }


class ProviderError(KnowledgeBaseException):
    """
    Embedding provider call failed (quota, network, bad response).
    Transient; retrying is the caller's decision.
    """

    def __init__(
        self,
        message: str = "Embedding provider call failed",
        provider: Optional[str] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if provider:
            context["provider"] = provider
        if cause is not None:
            context["cause"] = f"{type(cause).__name__}: {cause}"

        super().__init__(
            message=message,
            status_code=502,
            error_code="PROVIDER_ERROR",
            context=context,
        )

        self.provider = provider
        self.cause = cause


class ContractViolation(KnowledgeBaseException):
    """
    Provider returned a vector of the wrong dimension.
    Fatal: the vector must never be cached or stored.
    """

    def __init__(
        self,
        message: str = "Embedding dimension mismatch",
        expected: Optional[int] = None,
        actual: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if expected is not None:
            context["expected"] = expected
        if actual is not None:
            context["actual"] = actual

        super().__init__(
            message=message,
            status_code=500,
            error_code="CONTRACT_VIOLATION",
            context=context,
        )

        self.expected = expected
        self.actual = actual


class ValidationError(KnowledgeBaseException):
    """
    Document content is outside the configured length bounds.
    """

    def __init__(
        self,
        message: str = "Document content failed validation",
        length: Optional[int] = None,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if length is not None:
            context["length"] = length
        if min_length is not None:
            context["min_length"] = min_length
        if max_length is not None:
            context["max_length"] = max_length

        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            context=context,
        )


class NotFoundError(KnowledgeBaseException):
    """
    Operation referenced a document id that does not exist.
    """

    def __init__(
        self,
        message: str = "Document not found",
        document_id: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if document_id is not None:
            context["document_id"] = str(document_id)

        super().__init__(
            message=message,
            status_code=404,
            error_code="NOT_FOUND",
            context=context,
        )

        self.document_id = document_id


class StoreError(KnowledgeBaseException):
    """
    Persistence I/O failed.
    """

    def __init__(
        self,
        message: str = "Document store operation failed",
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if operation:
            context["operation"] = operation

        super().__init__(
            message=message,
            status_code=503,
            error_code="STORE_ERROR",
            context=context,
        )

        self.operation = operation
