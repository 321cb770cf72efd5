"""
Structured error handling for the automation broker.

Provides custom exception types, error context, and recovery strategies.
Local, recoverable failures (one provider, one malformed detector line, one
cache miss) are absorbed by the component that sees them; only exhaustion of
every viable option surfaces to the caller.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(Enum):
    """Error recovery strategies."""
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    FALLBACK = "fallback"
    IGNORE = "ignore"


@dataclass
class ErrorContext:
    """
    Context information about an error.

    Captures everything needed to understand and debug an error.
    """

    error_type: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    # Dispatch state
    provider: Optional[str] = None
    request_id: Optional[str] = None

    # Element pipeline state
    origin: Optional[str] = None
    description: Optional[str] = None

    # Additional metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'error_type': self.error_type,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'provider': self.provider,
            'request_id': self.request_id,
            'origin': self.origin,
            'description': self.description,
            'metadata': self.metadata
        }


class BrokerError(Exception):
    """
    Base exception for all broker errors.

    All custom exceptions should inherit from this.
    """

    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    recovery_strategy: RecoveryStrategy = RecoveryStrategy.RETRY

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        **kwargs
    ):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext(
            error_type=self.__class__.__name__,
            message=message
        )

        # Allow overriding context fields; unknown keys land in metadata
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != 'metadata':
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value


class CredentialMissingError(BrokerError):
    """Provider has no credential configured; it is skipped without a network call."""
    severity = ErrorSeverity.LOW
    recovery_strategy = RecoveryStrategy.SKIP


class ProviderRequestFailedError(BrokerError):
    """One provider failed (network, timeout, malformed response); triggers fallback."""
    severity = ErrorSeverity.MEDIUM
    recovery_strategy = RecoveryStrategy.FALLBACK


class AllProvidersFailedError(BrokerError):
    """Every attempted provider failed for one dispatch."""
    severity = ErrorSeverity.HIGH
    recovery_strategy = RecoveryStrategy.ABORT

    def __init__(self, message: str, attempts: Optional[List[Any]] = None,
                 last_error: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = list(attempts or [])
        self.last_error = last_error


class DispatchCancelledError(BrokerError):
    """The dispatch was cancelled before a provider succeeded."""
    severity = ErrorSeverity.LOW
    recovery_strategy = RecoveryStrategy.ABORT


class DuplicateRequestError(BrokerError):
    """A stream was started with a request id that is still in flight."""
    severity = ErrorSeverity.MEDIUM
    recovery_strategy = RecoveryStrategy.ABORT


class ElementParseError(BrokerError):
    """One malformed detection line; the line is skipped and the batch continues."""
    severity = ErrorSeverity.LOW
    recovery_strategy = RecoveryStrategy.SKIP


class NoCandidatesError(BrokerError):
    """Pre-filtering produced an empty candidate set."""
    severity = ErrorSeverity.MEDIUM
    recovery_strategy = RecoveryStrategy.ABORT


class LowConfidenceMatchError(BrokerError):
    """Resolution fell below the acceptance threshold; retryable with exclusions."""
    severity = ErrorSeverity.MEDIUM
    recovery_strategy = RecoveryStrategy.RETRY

    def __init__(self, message: str, element: Any = None, confidence: float = 0.0,
                 has_window_bounds: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.element = element
        self.confidence = confidence
        self.has_window_bounds = has_window_bounds


class ElementNotFoundError(BrokerError):
    """Retries exhausted with no acceptable match."""
    severity = ErrorSeverity.MEDIUM
    recovery_strategy = RecoveryStrategy.ABORT


class CacheUnavailableError(BrokerError):
    """Cache backend absent or errored; always treated as a miss."""
    severity = ErrorSeverity.LOW
    recovery_strategy = RecoveryStrategy.IGNORE


class DetectorUnavailableError(BrokerError):
    """No element detector is configured, or every configured detector failed."""
    severity = ErrorSeverity.HIGH
    recovery_strategy = RecoveryStrategy.ABORT


class ConfigurationError(BrokerError):
    """Invalid configuration."""
    severity = ErrorSeverity.CRITICAL
    recovery_strategy = RecoveryStrategy.ABORT
