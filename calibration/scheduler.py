# calibration/scheduler.py
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

TICK_INTERVAL_MS = 10


class TickScheduler:
    """
    Calls `callback` every `interval_ms` on one background thread.

    Ticks never overlap. stop() may be called from inside the callback;
    the worker then exits after the current tick.
    """

    def __init__(self, callback: Callable[[], None], interval_ms: int = TICK_INTERVAL_MS):
        self.callback = callback
        self.interval_ms = int(interval_ms)
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._local = threading.local()

    @property
    def is_running(self) -> bool:
        return (
            self._worker is not None
            and self._worker.is_alive()
            and not self._stop.is_set()
        )

    def start(self) -> None:
        if self.is_running:
            return

        # Each worker owns its stop event, so a worker told to stop can
        # finish its last tick while a fresh one starts.
        stop = threading.Event()
        self._stop = stop
        self._worker = threading.Thread(
            target=self._run, args=(stop,), name="calibration-tick", daemon=True
        )
        self._worker.start()
        logger.debug("Tick scheduler started (%d ms)", self.interval_ms)

    def stop(self) -> None:
        # No join: the caller may hold a lock the current tick is waiting on
        self._stop.set()
        logger.debug("Tick scheduler stopped")

    def join(self, timeout: Optional[float] = None) -> None:
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)

    def is_current(self) -> bool:
        """
        False on a worker thread that has been stopped, so a tick that was
        blocked while the scheduler restarted can bail out. Always True on
        other threads.
        """
        stop = getattr(self._local, "stop", None)
        return stop is None or not stop.is_set()

    def _run(self, stop: threading.Event) -> None:
        self._local.stop = stop
        interval = self.interval_ms / 1000.0
        while not stop.wait(interval):
            try:
                self.callback()
            except Exception:  # noqa: BLE001
                logger.exception("Calibration tick failed")
