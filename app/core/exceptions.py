from typing import Optional, Dict, Any, List


class AppException(Exception):
    """Base application exception"""
    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "APP_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class TenantRequiredError(AppException):
    """Request arrived without an organization context"""
    def __init__(self, message: str = "Organization context is required", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=400,
            error_code="TENANT_REQUIRED",
            details=details
        )


class AuthorizationError(AppException):
    """Authorization related errors"""
    def __init__(self, message: str = "Insufficient permissions", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=403,
            error_code="AUTHZ_ERROR",
            details=details
        )


class NotFoundError(AppException):
    """Resource not found errors"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=404,
            error_code="NOT_FOUND",
            details=details
        )


class ValidationError(AppException):
    """Validation errors"""
    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=details
        )


class InvalidRuleConfiguration(AppException):
    """A commission rule cannot be evaluated as configured.

    Raised by the engine instead of silently miscalculating. Distinct from
    the "no rule matched" outcome, which is a normal result.
    """
    def __init__(
        self,
        rule_id: Optional[str],
        errors: List[Dict[str, str]],
        message: Optional[str] = None
    ):
        self.rule_id = rule_id
        self.errors = errors
        super().__init__(
            message=message or f"Invalid configuration for commission rule {rule_id}",
            status_code=422,
            error_code="INVALID_RULE_CONFIGURATION",
            details={"rule_id": rule_id, "errors": errors}
        )


class WorkflowError(AppException):
    """Illegal commission status transition"""
    def __init__(self, message: str = "Operation not allowed in current status", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=409,
            error_code="WORKFLOW_ERROR",
            details=details
        )


class ConcurrencyConflictError(AppException):
    """Row was modified by another writer since it was read"""
    def __init__(self, message: str = "Record was modified concurrently, retry the operation", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=409,
            error_code="CONCURRENCY_CONFLICT",
            details=details
        )
