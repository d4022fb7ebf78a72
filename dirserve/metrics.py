"""
Metrics collection and reporting for dirserve
"""

import time
import threading
from typing import Dict, Any
from contextlib import contextmanager
from dataclasses import dataclass, field


@dataclass
class Metrics:
    """Application metrics container"""

    # Request metrics
    total_requests: int = 0
    active_requests: int = 0
    requests_by_method: Dict[str, int] = field(default_factory=dict)
    requests_by_status: Dict[int, int] = field(default_factory=dict)
    total_response_time: float = 0.0

    # Transfer metrics
    total_download_bytes: int = 0

    # Error metrics
    total_errors: int = 0
    traversal_rejections: int = 0

    # Archive metrics
    archives_started: int = 0
    archives_completed: int = 0
    archives_failed: int = 0
    archive_entries: int = 0
    archive_skipped: int = 0
    archive_bytes: int = 0
    active_archives: int = 0

    # WebDAV metrics
    webdav_requests: int = 0

    startup_time: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary"""
        uptime = time.time() - self.startup_time
        avg = self.total_response_time / self.total_requests if self.total_requests else 0.0

        return {
            "uptime_seconds": uptime,
            "requests": {
                "total": self.total_requests,
                "active": self.active_requests,
                "by_method": self.requests_by_method.copy(),
                "by_status": self.requests_by_status.copy(),
                "avg_response_time": avg,
            },
            "transfer": {
                "download_bytes": self.total_download_bytes,
            },
            "errors": {
                "total": self.total_errors,
                "traversal_rejections": self.traversal_rejections,
            },
            "archives": {
                "started": self.archives_started,
                "completed": self.archives_completed,
                "failed": self.archives_failed,
                "active": self.active_archives,
                "entries": self.archive_entries,
                "skipped": self.archive_skipped,
                "bytes": self.archive_bytes,
            },
            "webdav": {
                "requests": self.webdav_requests,
            },
        }


class MetricsManager:
    """Thread-safe metrics manager"""

    def __init__(self):
        self.metrics = Metrics()
        self._lock = threading.Lock()

    def increment_requests(self, method: str = "GET"):
        with self._lock:
            self.metrics.total_requests += 1
            self.metrics.requests_by_method[method] = self.metrics.requests_by_method.get(method, 0) + 1
            self.metrics.active_requests += 1

    def record_response(self, status_code: int, response_time: float):
        """Record response metrics"""
        with self._lock:
            self.metrics.active_requests = max(0, self.metrics.active_requests - 1)
            self.metrics.requests_by_status[status_code] = self.metrics.requests_by_status.get(status_code, 0) + 1
            self.metrics.total_response_time += response_time
            if status_code >= 500:
                self.metrics.total_errors += 1

    def add_download_bytes(self, bytes_count: int):
        with self._lock:
            self.metrics.total_download_bytes += bytes_count

    def increment_errors(self):
        with self._lock:
            self.metrics.total_errors += 1

    def increment_traversal_rejections(self):
        with self._lock:
            self.metrics.traversal_rejections += 1

    def increment_webdav_requests(self):
        with self._lock:
            self.metrics.webdav_requests += 1

    def record_archive(self, entries: int, skipped: int):
        """Record a completed archive job"""
        with self._lock:
            self.metrics.archives_completed += 1
            self.metrics.archive_entries += entries
            self.metrics.archive_skipped += skipped

    @contextmanager
    def download_context(self):
        """Context manager for download metrics"""
        class DownloadCounter:
            def __init__(self, manager):
                self.manager = manager
                self.bytes_count = 0

            def add_bytes(self, count: int):
                self.bytes_count += count
                self.manager.add_download_bytes(count)

        yield DownloadCounter(self)

    @contextmanager
    def archive_context(self):
        """
        Context manager around one streamed archive

        Counts the job as failed unless record_archive() was called before the
        context exits.
        """
        with self._lock:
            self.metrics.archives_started += 1
            self.metrics.active_archives += 1
            completed_before = self.metrics.archives_completed

        class ArchiveCounter:
            def __init__(self, manager):
                self.manager = manager
                self.bytes_count = 0

            def add_bytes(self, count: int):
                self.bytes_count += count
                with self.manager._lock:
                    self.manager.metrics.archive_bytes += count
                    self.manager.metrics.total_download_bytes += count

        try:
            yield ArchiveCounter(self)
        finally:
            with self._lock:
                self.metrics.active_archives = max(0, self.metrics.active_archives - 1)
                if self.metrics.archives_completed == completed_before:
                    self.metrics.archives_failed += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics snapshot"""
        with self._lock:
            return self.metrics.to_dict()

    def reset_metrics(self):
        """Reset all metrics (for testing)"""
        with self._lock:
            self.metrics = Metrics()


# Global metrics manager instance
metrics_manager = MetricsManager()


@contextmanager
def download_context():
    """Download context manager (global function)"""
    with metrics_manager.download_context() as counter:
        yield counter


@contextmanager
def archive_context():
    """Archive context manager (global function)"""
    with metrics_manager.archive_context() as counter:
        yield counter
