"""
Standardized error taxonomy for the replicated profile store.

Every error carries a stable code, a category and a severity so callers can
branch on the kind of failure instead of parsing messages:

- STORE_1xx: backing-store availability and lookup outcomes
- VAL_2xx: input validation
- SYNC_3xx: reconciliation jobs
- SYS_9xx: everything else

Only `AllStoresUnavailableError` and `ProfileNotFoundError` ever cross the
ReplicatedStore boundary; `StoreUnavailableError` stays per-store.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError


class ErrorCategory(str, Enum):
    STORE = "store"
    VALIDATION = "validation"
    SYNC = "sync"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReplicaError(Exception):
    """
    Base class for all profile-store errors.

    `data` holds structured context (store names, user ids) and is safe to
    surface to operators; it must never carry profile contents.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        data: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.category = category
        self.severity = severity
        self.data = data or {}
        self.suggestion = suggestion

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "data": self.data,
        }
        if self.suggestion:
            d["suggestion"] = self.suggestion
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)


# =============================================================================
# Store errors (STORE_1xx)
# =============================================================================


class StoreUnavailableError(ReplicaError):
    """One backing store failed (timeout, refused connection, auth failure)."""

    def __init__(self, store: str, reason: str, operation: Optional[str] = None) -> None:
        super().__init__(
            code="STORE_101",
            message=f"Store '{store}' unavailable: {reason}",
            category=ErrorCategory.STORE,
            severity=ErrorSeverity.MEDIUM,
            data={"store": store, "reason": reason, "operation": operation},
        )
        self.store = store
        self.reason = reason


class AllStoresUnavailableError(ReplicaError):
    def __init__(self, operation: str, errors: Optional[Dict[str, str]] = None, user_id: Optional[str] = None) -> None:
        errors = errors or {}
        detail = ", ".join(f"{name} ({err})" for name, err in errors.items()) or "no store available"
        super().__init__(
            code="STORE_102",
            message=f"{operation} failed on every store: {detail}",
            category=ErrorCategory.STORE,
            severity=ErrorSeverity.CRITICAL,
            data={"operation": operation, "errors": errors, "user_id": user_id},
            suggestion="Check store health with `replica_admin status`; retry once a store recovers.",
        )
        self.errors = errors


class ProfileNotFoundError(ReplicaError):
    """Every queried store answered cleanly and none holds the profile."""

    def __init__(self, user_id: str, stores: Optional[List[str]] = None) -> None:
        super().__init__(
            code="STORE_103",
            message=f"Profile not found: {user_id}",
            category=ErrorCategory.STORE,
            severity=ErrorSeverity.LOW,
            data={"user_id": user_id, "stores": stores or []},
        )
        self.user_id = user_id


class SchemaDriftDegraded(ReplicaError):
    """
    Warning annotation: the relational write only succeeded with the reduced
    core-field projection. Attached to write results, not raised.
    """

    def __init__(self, store: str, missing_column_error: str, written_fields: List[str]) -> None:
        super().__init__(
            code="STORE_104",
            message=f"Store '{store}' accepted core fields only: {missing_column_error}",
            category=ErrorCategory.STORE,
            severity=ErrorSeverity.LOW,
            data={"store": store, "written_fields": written_fields},
            suggestion="Run migrations so the users table carries every profile column.",
        )


# =============================================================================
# Validation errors (VAL_2xx)
# =============================================================================


class InvalidProfileError(ReplicaError):
    def __init__(self, reason: str, fields: Optional[List[str]] = None) -> None:
        super().__init__(
            code="VAL_201",
            message=f"Invalid profile: {reason}",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.MEDIUM,
            data={"fields": fields or []},
        )


# =============================================================================
# Sync errors (SYNC_3xx)
# =============================================================================


class SyncError(ReplicaError):
    def __init__(self, direction: str, reason: str, user_id: Optional[str] = None) -> None:
        super().__init__(
            code="SYNC_301",
            message=f"Sync {direction} failed: {reason}",
            category=ErrorCategory.SYNC,
            severity=ErrorSeverity.HIGH,
            data={"direction": direction, "user_id": user_id},
        )


# =============================================================================
# System errors (SYS_9xx)
# =============================================================================


class InternalError(ReplicaError):
    def __init__(self, component: str, reason: str) -> None:
        super().__init__(
            code="SYS_901",
            message=f"Internal error in {component}: {reason}",
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.HIGH,
            data={"component": component},
        )


# =============================================================================
# Utilities
# =============================================================================


def classify_exception(exc: BaseException, store: Optional[str] = None) -> ReplicaError:
    """
    Map an arbitrary exception onto the taxonomy.

    Driver-level failures (SQLAlchemy, redis, timeouts, socket errors) become
    StoreUnavailableError when the failing store is known.
    """
    if isinstance(exc, ReplicaError):
        return exc

    reason = str(exc) or exc.__class__.__name__
    if store is not None:
        if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
            return StoreUnavailableError(store, reason)
        if isinstance(exc, (SQLAlchemyError, RedisError)):
            return StoreUnavailableError(store, reason)

    return InternalError(component=store or "replication", reason=reason)


def json_error_response(error: ReplicaError) -> Dict[str, Any]:
    return {"ok": False, "error": error.to_dict()}


def json_ok_response(data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"ok": True, "data": data or {}}
