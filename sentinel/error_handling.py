"""
Error taxonomy, retry policy and error bookkeeping for the sentinel pipeline
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List
import structlog

from tenacity import (
    retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type, before_sleep_log
)

logger = structlog.get_logger()


# Exception classes for different error scenarios
class ExternalAPIError(Exception):
    """Raised when an upstream protocol or price API call fails"""
    pass


class CacheStoreError(Exception):
    """Raised when the expiring key/value store is unreachable or misbehaves"""
    pass


class AlertStoreError(Exception):
    """Raised when the alert rate-limiter state cannot be updated"""
    pass


class TimeSeriesStoreError(Exception):
    """Raised when stored metric history cannot be read"""
    pass


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exceptions: tuple = (Exception,)
):
    """Retry decorator with exponential backoff"""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


class ErrorCollector:
    """Collects recent errors for the health endpoint"""

    def __init__(self, max_errors: int = 1000):
        self.errors: List[Dict] = []
        self.max_errors = max_errors

    def record_error(self, error: Exception, context: Dict[str, Any] = None):
        """Record an error with context"""
        error_info = {
            "timestamp": datetime.utcnow(),
            "type": type(error).__name__,
            "message": str(error),
            "context": context or {},
        }

        self.errors.append(error_info)

        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.utcnow() - timedelta(hours=hours)

        recent_errors = [
            error for error in self.errors
            if error["timestamp"] > cutoff_time
        ]

        error_types: Dict[str, int] = {}
        for error in recent_errors:
            error_types[error["type"]] = error_types.get(error["type"], 0) + 1

        last_error = recent_errors[-1] if recent_errors else None

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types,
            "last_error": {
                "type": last_error["type"],
                "message": last_error["message"],
                "timestamp": last_error["timestamp"].isoformat(),
            } if last_error else None,
        }
