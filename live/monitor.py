"""
HealthMonitor: Driver loop health tracking.

Checks:
  - Heartbeat (is the loop still running?)
  - Error rate tracking, overall and per symbol
"""
import time
import logging

logger = logging.getLogger('health_monitor')


class HealthMonitor:

    def __init__(self, config: dict):
        self.config = config
        self.last_heartbeat = time.time()
        self.error_count = 0
        self.consecutive_errors = 0
        self.max_consecutive_errors = config.get('max_consecutive_errors', 5)
        self.symbol_errors = {}      # symbol -> {'count', 'last_error', 'last_ts'}

    def heartbeat(self):
        """Record a clean loop iteration."""
        self.last_heartbeat = time.time()
        self.consecutive_errors = 0

    def check_heartbeat(self, max_gap_seconds: float = 1200) -> bool:
        """Check if heartbeat is recent (within 20 min). Returns True if healthy."""
        gap = time.time() - self.last_heartbeat
        if gap > max_gap_seconds:
            logger.warning(f"Heartbeat stale: {gap:.0f}s since last beat "
                           f"(max {max_gap_seconds}s)")
            return False
        return True

    def report_error(self, error: Exception, symbol: str = '') -> bool:
        """
        Track an error. Returns True if consecutive errors exceed threshold
        (caller should alert).
        """
        self.error_count += 1
        self.consecutive_errors += 1
        if symbol:
            entry = self.symbol_errors.setdefault(
                symbol, {'count': 0, 'last_error': '', 'last_ts': 0.0})
            entry['count'] += 1
            entry['last_error'] = str(error)
            entry['last_ts'] = time.time()

        logger.error(f"Error #{self.error_count} "
                     f"(consecutive: {self.consecutive_errors})"
                     f"{' [' + symbol + ']' if symbol else ''}: {error}")

        if self.consecutive_errors >= self.max_consecutive_errors:
            logger.critical(
                f"Consecutive errors ({self.consecutive_errors}) exceeded "
                f"max ({self.max_consecutive_errors}).")
            return True
        return False

    def get_status(self) -> dict:
        """Return current health status summary."""
        gap = time.time() - self.last_heartbeat
        if self.consecutive_errors >= self.max_consecutive_errors:
            status = 'critical'
        elif self.consecutive_errors > 0 or gap > 600:
            status = 'degraded'
        else:
            status = 'healthy'

        return {
            'last_heartbeat': self.last_heartbeat,
            'heartbeat_age_seconds': round(gap, 1),
            'error_count': self.error_count,
            'consecutive_errors': self.consecutive_errors,
            'symbol_errors': {s: dict(e) for s, e in self.symbol_errors.items()},
            'status': status,
        }
