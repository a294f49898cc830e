"""
Simple metrics collection for claim, cache and history operations.
Lightweight alternative to Prometheus for MVP.
"""

from typing import Dict, Any, Optional
from datetime import datetime, timedelta
from collections import defaultdict, deque
import threading

from src.core.logger.logger import get_logger

logger = get_logger(__name__)


class ClaimMetrics:
    """Simple in-memory metrics collector for the collectible engine."""

    def __init__(self, retention_hours: int = 24):
        self._lock = threading.Lock()
        self._retention_hours = retention_hours

        # Time-series data (timestamp, value) pairs
        self._claim_success = deque()
        self._claim_failures = deque()

        self._counters = {
            'claim_attempts': 0,
            'claim_success': 0,
            'claim_failures': 0,
            'gas_estimates': 0,
            'gas_estimate_failures': 0,
            'cache_hits': 0,
            'cache_misses': 0,
            'cache_refreshes': 0,
            'cache_refresh_failures': 0,
            'stale_served': 0,
            'events_ingested': 0,
            'listener_gaps': 0,
        }
        self._failures_by_code = defaultdict(int)
        self._last_refresh_template_count: Optional[int] = None

    def _cleanup_old_data(self):
        """Remove data older than retention period."""
        cutoff_time = datetime.utcnow() - timedelta(hours=self._retention_hours)
        for data_deque in (self._claim_success, self._claim_failures):
            while data_deque and data_deque[0][0] < cutoff_time:
                data_deque.popleft()

    def record_claim_attempt(self):
        with self._lock:
            self._counters['claim_attempts'] += 1

    def record_claim_outcome(self, success: bool, error_code: Optional[str] = None):
        """Record the end of a claim call."""
        with self._lock:
            now = datetime.utcnow()
            if success:
                self._claim_success.append((now, 1))
                self._counters['claim_success'] += 1
            else:
                self._claim_failures.append((now, 1))
                self._counters['claim_failures'] += 1
                self._failures_by_code[error_code or 'UNKNOWN'] += 1
            self._cleanup_old_data()

    def record_gas_estimate(self, success: bool):
        with self._lock:
            self._counters['gas_estimates'] += 1
            if not success:
                self._counters['gas_estimate_failures'] += 1

    def record_cache_hit(self):
        with self._lock:
            self._counters['cache_hits'] += 1

    def record_cache_miss(self):
        with self._lock:
            self._counters['cache_misses'] += 1

    def record_cache_refresh(self, success: bool, template_count: int):
        with self._lock:
            if success:
                self._counters['cache_refreshes'] += 1
                self._last_refresh_template_count = template_count
            else:
                self._counters['cache_refresh_failures'] += 1

    def record_stale_served(self):
        with self._lock:
            self._counters['stale_served'] += 1

    def record_events_ingested(self, count: int):
        with self._lock:
            self._counters['events_ingested'] += count

    def record_listener_gap(self):
        with self._lock:
            self._counters['listener_gaps'] += 1

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get current metrics summary."""
        with self._lock:
            self._cleanup_old_data()

            one_hour_ago = datetime.utcnow() - timedelta(hours=1)
            recent_success = sum(1 for ts, _ in self._claim_success if ts > one_hour_ago)
            recent_failures = sum(1 for ts, _ in self._claim_failures if ts > one_hour_ago)
            total_recent = recent_success + recent_failures
            success_rate = (recent_success / total_recent * 100) if total_recent > 0 else 0

            lookups = self._counters['cache_hits'] + self._counters['cache_misses']
            hit_rate = (self._counters['cache_hits'] / lookups * 100) if lookups > 0 else 0

            return {
                'timestamp': datetime.utcnow().isoformat() + 'Z',
                'claims': {
                    'total_attempts': self._counters['claim_attempts'],
                    'success_count': self._counters['claim_success'],
                    'failure_count': self._counters['claim_failures'],
                    'failures_by_code': dict(self._failures_by_code),
                    'gas_estimates': self._counters['gas_estimates'],
                    'gas_estimate_failures': self._counters['gas_estimate_failures'],
                },
                'last_hour': {
                    'claim_success': recent_success,
                    'claim_failures': recent_failures,
                    'success_rate_percent': round(success_rate, 2),
                },
                'template_cache': {
                    'hits': self._counters['cache_hits'],
                    'misses': self._counters['cache_misses'],
                    'hit_rate_percent': round(hit_rate, 2),
                    'refreshes': self._counters['cache_refreshes'],
                    'refresh_failures': self._counters['cache_refresh_failures'],
                    'stale_served': self._counters['stale_served'],
                    'template_count': self._last_refresh_template_count,
                },
                'history': {
                    'events_ingested': self._counters['events_ingested'],
                    'listener_gaps': self._counters['listener_gaps'],
                },
                'retention_hours': self._retention_hours
            }

    def get_health_metrics(self) -> Dict[str, str]:
        """Get basic health metrics for health check."""
        with self._lock:
            one_hour_ago = datetime.utcnow() - timedelta(hours=1)
            recent_success = sum(1 for ts, _ in self._claim_success if ts > one_hour_ago)
            recent_failures = sum(1 for ts, _ in self._claim_failures if ts > one_hour_ago)

            total_recent = recent_success + recent_failures
            error_rate = (recent_failures / total_recent * 100) if total_recent > 0 else 0

            if error_rate > 50:
                status = "unhealthy"
            elif error_rate > 20 or self._counters['cache_refresh_failures'] > self._counters['cache_refreshes']:
                status = "degraded"
            else:
                status = "healthy"

            return {
                'status': status,
                'error_rate_percent': f"{error_rate:.1f}",
                'listener_gaps': str(self._counters['listener_gaps'])
            }


# Global metrics instance
metrics = ClaimMetrics()


def get_metrics() -> ClaimMetrics:
    """Get the global metrics instance."""
    return metrics
