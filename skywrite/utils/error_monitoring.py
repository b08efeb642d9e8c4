import json
import logging
import traceback
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple


class SkywriteError(Exception):
    """Base exception for all syndication pipeline failures"""
    pass


class ConfigurationError(SkywriteError):
    """Invalid or missing configuration detected at startup"""
    pass


class TransportError(SkywriteError):
    """Network failure while fetching a feed or page"""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Transport failure for {url}: {reason}")


class UpstreamStatusError(SkywriteError):
    """Non-success HTTP status while fetching a feed or page"""

    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"HTTP {status} for {url}")


class FeedParseError(SkywriteError):
    """Feed bytes could not be parsed into entries"""
    pass


class StorageError(SkywriteError):
    """Dedup store unavailable or corrupt; fatal to the feed task"""
    pass


class PublishError(SkywriteError):
    """The social network rejected or failed to create a post"""
    pass


@dataclass
class ErrorContext:
    """Context for an error occurrence"""
    error_type: str
    error_message: str
    stack_trace: str
    timestamp: datetime
    feed_url: str
    operation: str
    severity: str
    recovery_action: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ErrorSeverity(Enum):
    """Error severity levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorHandler:
    """
    Records and classifies pipeline failures.

    Shared by every feed task. Recording never raises; whether a failure
    stops a task is decided by the caller.
    """

    PATTERN_THRESHOLD = 3

    def __init__(self, history_size: int = 100) -> None:
        self.error_history: Deque[ErrorContext] = deque(maxlen=history_size)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.logger = logging.getLogger(__name__)

    def handle_error(
        self,
        error: Exception,
        feed_url: str,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        error_type = type(error).__name__
        error_message = str(error)
        stack_trace = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        timestamp = datetime.now(timezone.utc)
        severity = self.classify_severity(error)

        error_context = ErrorContext(
            error_type=error_type,
            error_message=error_message,
            stack_trace=stack_trace,
            timestamp=timestamp,
            feed_url=feed_url,
            operation=operation,
            severity=severity.value,
            recovery_action=self.get_recovery_suggestion(error),
            metadata=context or {},
        )

        self.error_history.append(error_context)
        self.error_counts[error_type] += 1

        level = logging.ERROR if severity in (ErrorSeverity.CRITICAL, ErrorSeverity.HIGH) else logging.WARNING
        self.logger.log(level, json.dumps({
            'event': 'error',
            'feed': feed_url,
            'operation': operation,
            'severity': severity.value,
            'error_type': error_type,
            'error_message': error_message,
            'context': context or {},
            'timestamp': timestamp.isoformat(),
        }, default=str))

        return error_context

    def classify_severity(self, error: Exception) -> ErrorSeverity:
        if isinstance(error, StorageError):
            return ErrorSeverity.CRITICAL
        if isinstance(error, ConfigurationError):
            return ErrorSeverity.HIGH
        if isinstance(error, (TransportError, UpstreamStatusError, FeedParseError)):
            return ErrorSeverity.MEDIUM
        if isinstance(error, PublishError):
            return ErrorSeverity.LOW
        # Unknown failures inside an entry are surfaced louder than known ones
        return ErrorSeverity.HIGH

    def is_fatal(self, error: Exception) -> bool:
        return self.classify_severity(error) == ErrorSeverity.CRITICAL

    def get_recovery_suggestion(self, error: Exception) -> Optional[str]:
        if isinstance(error, StorageError):
            return "Check the database file, its directory permissions and free disk space."
        if isinstance(error, UpstreamStatusError):
            if error.status == 429:
                return "Upstream is rate limiting. Increase the poll interval."
            if error.status in (401, 403):
                return "Upstream refused access. The feed may require authentication."
            if error.status == 404:
                return "Feed or page not found. Verify the configured URL."
            return "Upstream returned an error status. It will be retried next cycle."
        if isinstance(error, TransportError):
            return "Check network connectivity and DNS resolution. It will be retried next cycle."
        if isinstance(error, FeedParseError):
            return "The feed did not parse as RSS or Atom. Verify the URL points at a feed."
        if isinstance(error, PublishError):
            msg = str(error).lower()
            if 'auth' in msg or 'token' in msg:
                return "Authentication failure. Verify APP_IDENTIFIER and APP_PASSWORD."
            return "Post was not created. The entry will be retried next cycle if still in the backfill window."
        return None

    def detect_error_patterns(self) -> List[str]:
        patterns: List[str] = []
        if not self.error_history:
            return patterns

        tuple_counts: Dict[Tuple[str, str], int] = defaultdict(int)
        for ctx in self.error_history:
            tuple_counts[(ctx.error_type, ctx.feed_url)] += 1

        for (etype, feed_url), count in tuple_counts.items():
            if count >= self.PATTERN_THRESHOLD:
                patterns.append(
                    f"Repeated pattern: {etype} for {feed_url} occurred {count} times recently"
                )

        return patterns

    def get_error_statistics(self) -> Dict[str, Any]:
        total = sum(self.error_counts.values())
        return {
            'total_errors': total,
            'error_types': dict(self.error_counts),
        }
