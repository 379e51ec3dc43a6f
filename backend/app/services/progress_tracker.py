"""Progress and ETA logging for long-running batch syncs."""

import logging
import time
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)


def format_duration(ms: float) -> str:
    """Human readable duration, e.g. '1h 2m 3s', '4m 5s' or '6s'."""
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class ProgressTracker:
    """
    Emits progress lines at most once per `log_interval` seconds, plus always on the
    final batch. Purely observational: nothing it does affects the sync.
    """

    LOG_INTERVAL_SECONDS = 10.0

    def __init__(self, log_interval: float = LOG_INTERVAL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.log_interval = log_interval
        self._clock = clock
        self.start_time = 0.0
        self.last_log_time = 0.0

    def start(self) -> None:
        self.start_time = self._clock()
        self.last_log_time = self.start_time
        log.info("Sync operation started")

    def log_progress(
        self,
        current_batch: int,
        total_batches: int,
        processed_count: int,
        total_count: Optional[int] = None,
    ) -> None:
        now = self._clock()
        if now - self.last_log_time < self.log_interval and current_batch != total_batches:
            return

        elapsed_ms = (now - self.start_time) * 1000
        progress = current_batch / total_batches * 100 if total_batches > 0 else 100.0
        eta_ms = elapsed_ms / current_batch * (total_batches - current_batch) if current_batch > 0 else 0

        processed = f"{processed_count}/{total_count}" if total_count else f"{processed_count}"
        message = (
            f"Progress: {current_batch}/{total_batches} batches ({progress:.1f}%), "
            f"processed {processed} deals, elapsed {format_duration(elapsed_ms)}"
        )
        if eta_ms > 0:
            message += f", ETA {format_duration(eta_ms)}"
        log.info(message)
        self.last_log_time = now

    def log_completion(self, total_deals: int, successful_deals: int, failed_deals: int, duration_ms: float) -> None:
        success_rate = successful_deals / total_deals * 100 if total_deals > 0 else 0.0
        log.info(
            f"Sync operation completed: total {total_deals} deals, "
            f"successful {successful_deals} ({success_rate:.1f}%), failed {failed_deals}, "
            f"duration {format_duration(duration_ms)}"
        )

    def log_error(self, message: str, context: Optional[Any] = None) -> None:
        if context is not None:
            log.error(f"Sync error: {message} (context: {context})")
        else:
            log.error(f"Sync error: {message}")
