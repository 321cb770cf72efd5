"""
Simple, robust event-driven logging system for the automation broker.

Design principles:
- Non-blocking: logging errors never break a dispatch or a detection pass
- Simple: minimal API surface
- Flexible: easy to customize output via callbacks
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Callable
from dataclasses import dataclass, field
from datetime import datetime
import time


class EventType(str, Enum):
    """All event types that can be logged"""
    # Dispatch events
    DISPATCH_START = "dispatch_start"
    DISPATCH_ATTEMPT = "dispatch_attempt"
    PROVIDER_SKIPPED = "provider_skipped"
    PROVIDER_FAILURE = "provider_failure"
    DISPATCH_SUCCESS = "dispatch_success"
    DISPATCH_EXHAUSTED = "dispatch_exhausted"
    DISPATCH_CANCELLED = "dispatch_cancelled"

    # Stream events
    STREAM_START = "stream_start"
    STREAM_END = "stream_end"
    STREAM_ERROR = "stream_error"
    STREAM_CANCEL = "stream_cancel"

    # Cache events
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    CACHE_WRITE = "cache_write"
    CACHE_EVICT = "cache_evict"
    CACHE_ERROR = "cache_error"

    # Warmup events
    WARMUP_START = "warmup_start"
    WARMUP_SUCCESS = "warmup_success"
    WARMUP_FAILURE = "warmup_failure"
    WARMUP_COLD_BOOT = "warmup_cold_boot"

    # Element pipeline events
    DETECTOR_CALL = "detector_call"
    DETECTOR_FAILURE = "detector_failure"
    ELEMENT_LINE_SKIPPED = "element_line_skipped"
    ELEMENTS_MERGED = "elements_merged"

    # Matching events
    MATCH_ATTEMPT = "match_attempt"
    MATCH_FOUND = "match_found"
    MATCH_LOW_CONFIDENCE = "match_low_confidence"
    MATCH_FAILURE = "match_failure"

    # System events
    SYSTEM_INFO = "system_info"
    SYSTEM_WARNING = "system_warning"
    SYSTEM_ERROR = "system_error"
    SYSTEM_DEBUG = "system_debug"

    # Performance/cost events
    LLM_USAGE = "llm_usage"  # Token usage and cost tracking


@dataclass
class BrokerEvent:
    """Structured event data"""
    event_type: EventType
    message: str
    timestamp: float = field(default_factory=time.time)
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, SUCCESS
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "event_type": self.event_type.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "timestamp_iso": datetime.fromtimestamp(self.timestamp).isoformat(),
            "level": self.level,
            "details": self.details
        }


class EventLogger:
    """
    Simple, robust event logger.

    In debug mode: prints directly to console
    In normal mode: only calls callbacks (no prints)
    """

    def __init__(self, debug_mode: bool = True, max_history: int = 1000):
        self.debug_mode = debug_mode
        self._callbacks: List[Callable[[BrokerEvent], None]] = []
        self._event_history: List[BrokerEvent] = []
        self._max_history = max_history

    def register_callback(self, callback: Callable[[BrokerEvent], None]) -> None:
        """Register a callback for all events"""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[BrokerEvent], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def get_history(self, event_type: Optional[EventType] = None) -> List[BrokerEvent]:
        """Return recorded events, optionally filtered by type"""
        if event_type is None:
            return list(self._event_history)
        return [e for e in self._event_history if e.event_type == event_type]

    def clear_history(self) -> None:
        self._event_history.clear()

    def _safe_emit(self, event: BrokerEvent) -> None:
        """Safely emit an event - never raises exceptions"""
        try:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history.pop(0)
        except Exception:
            pass  # Ignore history errors

        if self.debug_mode:
            try:
                self._print_event(event)
            except Exception:
                pass  # Ignore print errors

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                pass  # Ignore callback errors

    def _print_event(self, event: BrokerEvent) -> None:
        """Print event in debug mode"""
        level_emoji = {
            "DEBUG": "🔍",
            "INFO": "ℹ️",
            "WARNING": "⚠️",
            "ERROR": "❌",
            "SUCCESS": "✅"
        }
        emoji = level_emoji.get(event.level, "•")
        print(f"{emoji} {event.message}")

        if event.details:
            for key, value in event.details.items():
                if value is not None and key not in ['timestamp', 'timestamp_iso']:
                    # Only print simple types to avoid errors
                    if isinstance(value, (str, int, float, bool)):
                        print(f"   {key}: {value}")

    def emit(self, event_type: EventType, message: str, level: str = "INFO", **details) -> None:
        """Emit an event - safe wrapper that never raises"""
        try:
            event = BrokerEvent(
                event_type=event_type,
                message=message,
                level=level,
                details=details
            )
            self._safe_emit(event)
        except Exception:
            if self.debug_mode:
                try:
                    print(f"⚠️ Event logger error: {message}")
                except Exception:
                    pass

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch_start(self, mode: str, order: List[str], **details):
        try:
            msg = f"[DISPATCH] Starting {mode} dispatch, order: {' → '.join(order)}"
            self.emit(EventType.DISPATCH_START, msg, "INFO", mode=mode, order=order, **details)
        except Exception:
            pass

    def dispatch_attempt(self, provider: str, attempt: int, **details):
        try:
            self.emit(EventType.DISPATCH_ATTEMPT, f"[DISPATCH] Trying provider: {provider} (attempt {attempt})",
                      "DEBUG", provider=provider, attempt=attempt, **details)
        except Exception:
            pass

    def provider_skipped(self, provider: str, reason: str, **details):
        try:
            self.emit(EventType.PROVIDER_SKIPPED, f"[DISPATCH] Skipping provider {provider}: {reason}",
                      "DEBUG", provider=provider, reason=reason, **details)
        except Exception:
            pass

    def provider_failure(self, provider: str, error: str, latency_ms: float = None, **details):
        try:
            self.emit(EventType.PROVIDER_FAILURE, f"[DISPATCH] Provider {provider} failed - {error}",
                      "WARNING", provider=provider, error=error, latency_ms=latency_ms, **details)
        except Exception:
            pass

    def dispatch_success(self, provider: str, elapsed_ms: float, attempts: int, **details):
        try:
            msg = f"[DISPATCH] Provider {provider} succeeded in {elapsed_ms:.0f}ms after {attempts} attempt(s)"
            self.emit(EventType.DISPATCH_SUCCESS, msg, "SUCCESS",
                      provider=provider, elapsed_ms=elapsed_ms, attempts=attempts, **details)
        except Exception:
            pass

    def dispatch_exhausted(self, attempts: int, last_error: str = None, **details):
        try:
            msg = f"[DISPATCH] All providers failed after {attempts} attempt(s)"
            if last_error:
                msg += f" - last error: {last_error}"
            self.emit(EventType.DISPATCH_EXHAUSTED, msg, "ERROR", attempts=attempts, last_error=last_error, **details)
        except Exception:
            pass

    def dispatch_cancelled(self, attempts: int, **details):
        try:
            self.emit(EventType.DISPATCH_CANCELLED, f"[DISPATCH] Cancelled after {attempts} attempt(s)",
                      "WARNING", attempts=attempts, **details)
        except Exception:
            pass

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream_start(self, request_id: str, **details):
        try:
            self.emit(EventType.STREAM_START, f"[STREAM] Session {request_id} started", "INFO",
                      request_id=request_id, **details)
        except Exception:
            pass

    def stream_end(self, request_id: str, provider: str, text_length: int, **details):
        try:
            msg = f"[STREAM] Session {request_id} completed via {provider} ({text_length} chars)"
            self.emit(EventType.STREAM_END, msg, "SUCCESS",
                      request_id=request_id, provider=provider, text_length=text_length, **details)
        except Exception:
            pass

    def stream_error(self, request_id: str, code: str, message: str, **details):
        try:
            self.emit(EventType.STREAM_ERROR, f"[STREAM] Session {request_id} failed [{code}] - {message}",
                      "ERROR", request_id=request_id, code=code, error=message, **details)
        except Exception:
            pass

    def stream_cancel(self, request_id: str, **details):
        try:
            self.emit(EventType.STREAM_CANCEL, f"[STREAM] Session {request_id} cancelled", "INFO",
                      request_id=request_id, **details)
        except Exception:
            pass

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def cache_hit(self, cache_key: str, element_count: int, age_seconds: float, **details):
        try:
            msg = f"[CACHE] Hit {cache_key} ({element_count} elements, age {age_seconds:.0f}s)"
            self.emit(EventType.CACHE_HIT, msg, "INFO",
                      cache_key=cache_key, element_count=element_count, age_seconds=age_seconds, **details)
        except Exception:
            pass

    def cache_miss(self, cache_key: str, reason: str = "absent", **details):
        try:
            self.emit(EventType.CACHE_MISS, f"[CACHE] Miss {cache_key} ({reason})", "DEBUG",
                      cache_key=cache_key, reason=reason, **details)
        except Exception:
            pass

    def cache_write(self, cache_key: str, element_count: int, **details):
        try:
            self.emit(EventType.CACHE_WRITE, f"💾 [CACHE] Cached {element_count} elements under {cache_key}",
                      "INFO", cache_key=cache_key, element_count=element_count, **details)
        except Exception:
            pass

    def cache_evict(self, cache_key: str, reason: str, **details):
        try:
            self.emit(EventType.CACHE_EVICT, f"[CACHE] Evicted {cache_key} ({reason})", "DEBUG",
                      cache_key=cache_key, reason=reason, **details)
        except Exception:
            pass

    def cache_error(self, operation: str, error: Exception = None, **details):
        try:
            msg = f"[CACHE] {operation} failed"
            if error:
                msg += f" - {str(error)}"
            self.emit(EventType.CACHE_ERROR, msg, "ERROR", operation=operation,
                      error=str(error) if error else None, **details)
        except Exception:
            pass

    # ------------------------------------------------------------------
    # Warmup
    # ------------------------------------------------------------------

    def warmup_start(self, warmup_number: int, seconds_since_last: float = None, **details):
        try:
            self.emit(EventType.WARMUP_START, f"🔥 [WARMUP] Sending warmup request #{warmup_number}", "INFO",
                      warmup_number=warmup_number, seconds_since_last=seconds_since_last, **details)
        except Exception:
            pass

    def warmup_success(self, warmup_number: int, latency_ms: float, **details):
        try:
            msg = f"🔥 [WARMUP] Warmup #{warmup_number} successful in {latency_ms / 1000:.2f}s"
            self.emit(EventType.WARMUP_SUCCESS, msg, "SUCCESS",
                      warmup_number=warmup_number, latency_ms=latency_ms, **details)
        except Exception:
            pass

    def warmup_failure(self, warmup_number: int, error: str, **details):
        try:
            self.emit(EventType.WARMUP_FAILURE, f"🔥 [WARMUP] Warmup #{warmup_number} failed - {error}", "ERROR",
                      warmup_number=warmup_number, error=error, **details)
        except Exception:
            pass

    def warmup_cold_boot(self, latency_ms: float, interval_seconds: float, **details):
        try:
            msg = (f"🔥 [WARMUP] Cold boot detected ({latency_ms / 1000:.2f}s) - "
                   f"consider reducing the warmup interval below {interval_seconds:.0f}s")
            self.emit(EventType.WARMUP_COLD_BOOT, msg, "WARNING",
                      latency_ms=latency_ms, interval_seconds=interval_seconds, **details)
        except Exception:
            pass

    # ------------------------------------------------------------------
    # Element pipeline
    # ------------------------------------------------------------------

    def detector_call(self, detector: str, success: bool, latency_ms: float = None, **details):
        try:
            status = "succeeded" if success else "started"
            msg = f"📡 [DETECTOR] {detector} call {status}"
            if latency_ms is not None:
                msg += f" ({latency_ms:.0f}ms)"
            self.emit(EventType.DETECTOR_CALL, msg, "SUCCESS" if success else "INFO",
                      detector=detector, latency_ms=latency_ms, **details)
        except Exception:
            pass

    def detector_failure(self, detector: str, error: str, **details):
        try:
            self.emit(EventType.DETECTOR_FAILURE, f"📡 [DETECTOR] {detector} call failed - {error}", "WARNING",
                      detector=detector, error=error, **details)
        except Exception:
            pass

    def element_line_skipped(self, line: str, error: str, **details):
        try:
            self.emit(EventType.ELEMENT_LINE_SKIPPED, f"[PARSER] Skipped malformed element line - {error}",
                      "WARNING", line=line[:200], error=error, **details)
        except Exception:
            pass

    def elements_merged(self, merged_count: int, before: int, after: int, **details):
        try:
            msg = f"🔗 [MERGE] Merged {merged_count} icon+text pairs ({before} → {after} elements)"
            self.emit(EventType.ELEMENTS_MERGED, msg, "INFO",
                      merged_count=merged_count, before=before, after=after, **details)
        except Exception:
            pass

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match_attempt(self, description: str, attempt: int, max_retries: int, excluded_count: int, **details):
        try:
            msg = f"🔄 [MATCHER] Match attempt {attempt}/{max_retries} for '{description}'"
            if excluded_count:
                msg += f" ({excluded_count} excluded)"
            self.emit(EventType.MATCH_ATTEMPT, msg, "INFO", description=description, attempt=attempt,
                      max_retries=max_retries, excluded_count=excluded_count, **details)
        except Exception:
            pass

    def match_found(self, description: str, matched: str, confidence: float, **details):
        try:
            msg = f"[MATCHER] Matched '{description}' → '{matched}' (confidence {confidence:.2f})"
            self.emit(EventType.MATCH_FOUND, msg, "SUCCESS", description=description, matched=matched,
                      confidence=confidence, **details)
        except Exception:
            pass

    def match_low_confidence(self, description: str, matched: str, confidence: float, **details):
        try:
            msg = f"[MATCHER] Low confidence match rejected for '{description}': '{matched}' ({confidence:.2f})"
            self.emit(EventType.MATCH_LOW_CONFIDENCE, msg, "WARNING", description=description, matched=matched,
                      confidence=confidence, **details)
        except Exception:
            pass

    def match_failure(self, description: str, reason: str, **details):
        try:
            self.emit(EventType.MATCH_FAILURE, f"[MATCHER] No match for '{description}' - {reason}", "WARNING",
                      description=description, reason=reason, **details)
        except Exception:
            pass

    # ------------------------------------------------------------------
    # System
    # ------------------------------------------------------------------

    def system_info(self, message: str, **details):
        try:
            self.emit(EventType.SYSTEM_INFO, message, "INFO", **details)
        except Exception:
            pass

    def system_warning(self, message: str, **details):
        try:
            self.emit(EventType.SYSTEM_WARNING, message, "WARNING", **details)
        except Exception:
            pass

    def system_error(self, message: str, error: Exception = None, **details):
        try:
            msg = message
            if error:
                msg += f" - {str(error)}"
            self.emit(EventType.SYSTEM_ERROR, msg, "ERROR", error=str(error) if error else None, **details)
        except Exception:
            pass

    def system_debug(self, message: str, **details):
        try:
            self.emit(EventType.SYSTEM_DEBUG, message, "DEBUG", **details)
        except Exception:
            pass

    def llm_usage(self, provider: str, prompt_tokens: int, completion_tokens: int, total_tokens: int,
                  cost_usd: float = None, model: str = None, **details):
        try:
            msg = (f"Prompt usage via {provider}: Input Tokens: {prompt_tokens}, "
                   f"Output Tokens: {completion_tokens}, Total Tokens: {total_tokens}")
            if cost_usd:
                msg += f", Cost: {cost_usd} USD"
            if model:
                msg += f" (Model: {model})"
            self.emit(EventType.LLM_USAGE, msg, "DEBUG", provider=provider, prompt_tokens=prompt_tokens,
                      completion_tokens=completion_tokens, total_tokens=total_tokens, cost_usd=cost_usd,
                      model=model, **details)
        except Exception:
            pass


# Global instance
_global_event_logger: Optional[EventLogger] = None


def get_event_logger() -> EventLogger:
    """Get the global event logger instance"""
    global _global_event_logger
    if _global_event_logger is None:
        _global_event_logger = EventLogger(debug_mode=True)
    return _global_event_logger


def set_event_logger(logger: EventLogger) -> None:
    """Set the global event logger instance"""
    global _global_event_logger
    _global_event_logger = logger
