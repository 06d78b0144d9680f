from __future__ import annotations

import logging
import threading
from typing import Optional

from paddlesync.config_manager import ConfigManager
from paddlesync.sync_service import SyncService

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Background thread that syncs every team with a feed URL on an interval."""

    def __init__(self, sync_service: SyncService, config_manager: ConfigManager) -> None:
        self.sync_service = sync_service
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="paddlesync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_once(self, trigger: str) -> None:
        reports = self.sync_service.sync_all_teams()
        failed = sum(1 for report in reports if not report.success)
        logger.info("Scheduled sync (%s) finished for %d teams, %d failed", trigger, len(reports), failed)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            interval_seconds = self.config_manager.load().scheduler.interval_seconds
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            try:
                self.run_once("manual" if manual else "scheduled")
            except Exception:
                # Store outages must not kill the thread; the next tick retries.
                logger.exception("Scheduled sync run failed")
