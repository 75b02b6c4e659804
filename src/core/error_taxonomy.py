"""
Error Taxonomy for the Audit Query Engine

Provides systematic classification of failure modes with:
- Error categories aligned to the turn pipeline
- Recoverability indicators and user visibility
- Suggested recovery actions
- Structured error context for debugging

Only store execution failures are user visible. Parse failures fall back to the
deterministic extractor, store constraint violations are split transparently,
and data inconsistencies are normalised and logged.
"""

from enum import Enum, auto
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import logging
import traceback

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Systematic classification of failure modes."""
    # Intent extraction / parsing
    LLM_UNAVAILABLE = auto()
    LLM_TIMEOUT = auto()
    LLM_RESPONSE_PARSE_ERROR = auto()
    LLM_RATE_LIMITED = auto()

    # Resolution
    AMBIGUOUS_CATEGORY = auto()
    AMBIGUOUS_CONTINUITY = auto()
    UNSATISFIABLE_FILTERS = auto()

    # Document store
    STORE_CONSTRAINT_VIOLATION = auto()
    QUERY_EXECUTION_FAILED = auto()
    AUTHENTICATION_FAILED = auto()
    STORE_TIMEOUT = auto()

    # Data
    DATA_INCONSISTENCY = auto()

    # System
    CONFIGURATION_ERROR = auto()
    INTERNAL_ERROR = auto()
    UNKNOWN_ERROR = auto()


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Categories that are surfaced to the user; the rest are absorbed by the engine.
USER_VISIBLE_CATEGORIES = {
    ErrorCategory.QUERY_EXECUTION_FAILED,
    ErrorCategory.AUTHENTICATION_FAILED,
    ErrorCategory.STORE_TIMEOUT,
    ErrorCategory.CONFIGURATION_ERROR,
    ErrorCategory.INTERNAL_ERROR,
    ErrorCategory.UNKNOWN_ERROR,
}


@dataclass
class RecoveryAction:
    """Suggested action to recover from an error."""
    action_type: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def retry(delay_seconds: float = 1.0, max_attempts: int = 3) -> "RecoveryAction":
        return RecoveryAction(
            action_type="retry",
            description=f"Retry after {delay_seconds}s (max {max_attempts} attempts)",
            parameters={"delay": delay_seconds, "max_attempts": max_attempts}
        )

    @staticmethod
    def fallback(fallback_method: str) -> "RecoveryAction":
        return RecoveryAction(
            action_type="fallback",
            description=f"Use fallback: {fallback_method}",
            parameters={"method": fallback_method}
        )

    @staticmethod
    def split(limit: int) -> "RecoveryAction":
        return RecoveryAction(
            action_type="split",
            description=f"Split membership values into batches of {limit}",
            parameters={"limit": limit}
        )

    @staticmethod
    def abort(reason: str) -> "RecoveryAction":
        return RecoveryAction(
            action_type="abort",
            description=f"Abort operation: {reason}",
            parameters={"reason": reason}
        )


@dataclass
class ClassifiedError:
    """A classified error with full context."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    recoverable: bool
    recovery_actions: List[RecoveryAction]

    original_exception: Optional[Exception] = None
    pipeline_phase: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    user_message: Optional[str] = None

    def __post_init__(self):
        if self.original_exception and not self.stack_trace:
            self.stack_trace = ''.join(traceback.format_exception(
                type(self.original_exception),
                self.original_exception,
                self.original_exception.__traceback__
            ))

        if not self.user_message:
            self.user_message = self._generate_user_message()

    @property
    def user_visible(self) -> bool:
        return self.category in USER_VISIBLE_CATEGORIES

    def _generate_user_message(self) -> str:
        """Generate a user-friendly error message."""
        messages = {
            ErrorCategory.QUERY_EXECUTION_FAILED: "Query execution failed. Please try again.",
            ErrorCategory.AUTHENTICATION_FAILED: "Unable to authenticate with the findings database.",
            ErrorCategory.STORE_TIMEOUT: "The findings database did not respond in time.",
            ErrorCategory.CONFIGURATION_ERROR: "The query engine is not configured correctly.",
        }
        if self.category == ErrorCategory.QUERY_EXECUTION_FAILED and self.context.get("predicate"):
            return f"Query execution failed while applying {self.context['predicate']}."
        return messages.get(self.category, f"An error occurred: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.name,
            "severity": self.severity.value,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "user_visible": self.user_visible,
            "recovery_actions": [
                {"type": a.action_type, "description": a.description}
                for a in self.recovery_actions
            ],
            "pipeline_phase": self.pipeline_phase,
            "context": self.context,
        }


class AuditQueryError(Exception):
    """Base exception for engine errors with classification."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recoverable: bool = False,
        recovery_actions: List[RecoveryAction] = None,
        context: Dict[str, Any] = None,
    ):
        super().__init__(message)
        self.category = category
        self.severity = severity
        self.recoverable = recoverable
        self.recovery_actions = recovery_actions or []
        self.context = context or {}

    def classify(self) -> ClassifiedError:
        return ClassifiedError(
            category=self.category,
            severity=self.severity,
            message=str(self),
            recoverable=self.recoverable,
            recovery_actions=self.recovery_actions,
            original_exception=self,
            context=dict(self.context),
        )


class StoreQueryError(AuditQueryError):
    """Raised by document store adapters when a query cannot be executed."""

    def __init__(self, message: str, status_code: Optional[int] = None, context: Dict[str, Any] = None):
        context = dict(context or {})
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(
            message,
            category=ErrorCategory.QUERY_EXECUTION_FAILED,
            severity=ErrorSeverity.HIGH,
            recoverable=True,
            recovery_actions=[RecoveryAction.retry(delay_seconds=2.0)],
            context=context,
        )
        self.status_code = status_code


class StoreConstraintError(AuditQueryError):
    """A query violated a store limit (e.g. membership list too large)."""

    def __init__(self, message: str, limit: int, size: int):
        super().__init__(
            message,
            category=ErrorCategory.STORE_CONSTRAINT_VIOLATION,
            severity=ErrorSeverity.LOW,
            recoverable=True,
            recovery_actions=[RecoveryAction.split(limit)],
            context={"limit": limit, "size": size},
        )
        self.limit = limit
        self.size = size


class QueryExecutionError(AuditQueryError):
    """A compiled query failed; carries the predicate that was being applied."""

    def __init__(self, message: str, predicate: Optional[str] = None, cause: Optional[Exception] = None):
        context = {"predicate": predicate} if predicate else {}
        if cause is not None:
            context["cause"] = f"{type(cause).__name__}: {cause}"
        super().__init__(
            message,
            category=ErrorCategory.QUERY_EXECUTION_FAILED,
            severity=ErrorSeverity.HIGH,
            recoverable=True,
            recovery_actions=[RecoveryAction.retry(delay_seconds=2.0)],
            context=context,
        )
        self.predicate = predicate
        self.cause = cause


class ConfigurationError(AuditQueryError):
    """Missing or invalid configuration."""

    def __init__(self, message: str):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION_ERROR,
            severity=ErrorSeverity.CRITICAL,
            recoverable=False,
            recovery_actions=[RecoveryAction.abort(message)],
        )


def classify_error(
    exception: Exception,
    pipeline_phase: str = None,
    context: Dict[str, Any] = None,
) -> ClassifiedError:
    """Classify an exception into a structured error."""
    context = context or {}

    if isinstance(exception, AuditQueryError):
        classified = exception.classify()
        classified.pipeline_phase = pipeline_phase
        classified.context.update(context)
        return classified

    if isinstance(exception, TimeoutError):
        category = ErrorCategory.LLM_TIMEOUT if pipeline_phase in ("intent", "category") else ErrorCategory.STORE_TIMEOUT
        return ClassifiedError(
            category=category,
            severity=ErrorSeverity.MEDIUM,
            message=str(exception) or "timed out",
            recoverable=True,
            recovery_actions=[RecoveryAction.retry(delay_seconds=5.0)],
            original_exception=exception,
            pipeline_phase=pipeline_phase,
            context=context,
        )

    error_str = str(exception).lower()

    # Rate limiting
    if "rate limit" in error_str or "429" in error_str or "quota" in error_str:
        return ClassifiedError(
            category=ErrorCategory.LLM_RATE_LIMITED,
            severity=ErrorSeverity.MEDIUM,
            message=str(exception),
            recoverable=True,
            recovery_actions=[RecoveryAction.fallback("deterministic extractor")],
            original_exception=exception,
            pipeline_phase=pipeline_phase,
            context=context,
        )

    # Authentication
    if "unauthenticated" in error_str or "permission" in error_str or "401" in error_str or "403" in error_str:
        return ClassifiedError(
            category=ErrorCategory.AUTHENTICATION_FAILED,
            severity=ErrorSeverity.HIGH,
            message=str(exception),
            recoverable=False,
            recovery_actions=[],
            original_exception=exception,
            pipeline_phase=pipeline_phase,
            context=context,
        )

    # Timeout
    if "timeout" in error_str or "timed out" in error_str:
        return ClassifiedError(
            category=ErrorCategory.STORE_TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            message=str(exception),
            recoverable=True,
            recovery_actions=[RecoveryAction.retry(delay_seconds=5.0)],
            original_exception=exception,
            pipeline_phase=pipeline_phase,
            context=context,
        )

    # Default
    return ClassifiedError(
        category=ErrorCategory.INTERNAL_ERROR if pipeline_phase else ErrorCategory.UNKNOWN_ERROR,
        severity=ErrorSeverity.HIGH,
        message=str(exception),
        recoverable=False,
        recovery_actions=[],
        original_exception=exception,
        pipeline_phase=pipeline_phase,
        context=context,
    )
