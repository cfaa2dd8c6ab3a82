from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Optional

from calhook.config_manager import ConfigManager
from calhook.models import MIN_RENEWAL_INTERVAL_SECONDS, TimerTick

if TYPE_CHECKING:
    from calhook.connector import CalendarSourceConnector


logger = logging.getLogger(__name__)


class RenewalScheduler:
    def __init__(self, connector: "CalendarSourceConnector", config_manager: ConfigManager) -> None:
        self.connector = connector
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calhook-renewal-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_now(self) -> None:
        self._manual_trigger_event.set()

    def _interval_seconds(self) -> int:
        config = self.config_manager.load()
        return max(MIN_RENEWAL_INTERVAL_SECONDS, int(config.watch.renewal_interval_seconds))

    def tick(self) -> None:
        interval_seconds = self._interval_seconds()
        try:
            self.connector.run(TimerTick(interval_seconds=interval_seconds))
        except Exception:
            # A failed tick is retried on the next interval.
            logger.exception("renewal tick failed")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            interval_seconds = self._interval_seconds()
            self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.tick()
