"""
Sync Scheduler

Owns the periodic sync timer. One instance lives on ``app.state`` and is
created and closed by the application lifecycle hooks in ``app.main``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from app.services.sync_processor import SyncProcessor

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, processor: SyncProcessor, interval_seconds: float = 60.0):
        self.processor = processor
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        # stopped timers whose last pass may still be running
        self._stopping: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_seconds: Optional[float] = None) -> None:
        """Start the timer; restarts it when the interval changes."""
        if interval_seconds is not None:
            if interval_seconds <= 0:
                raise ValueError("interval_seconds must be positive")
            self.interval_seconds = interval_seconds
        if self.is_running:
            self.stop()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event))
        logger.info("Auto-sync started (every %ss)", self.interval_seconds)

    def stop(self) -> None:
        """Stop scheduling passes; a pass already running finishes normally."""
        if self._task is None:
            return
        self._stop_event.set()
        if not self._task.done():
            self._stopping.add(self._task)
            self._task.add_done_callback(self._stopping.discard)
        self._task = None
        logger.info("Auto-sync stopped")

    async def trigger_once(self) -> Dict[str, Any]:
        return await self.processor.process_queue()

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.interval_seconds
                )
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                await self.processor.process_queue()
            except Exception:
                logger.exception("Scheduled sync pass failed")

    async def aclose(self) -> None:
        """Stop the timer and wait for every timer task (and its pass) to end."""
        self.stop()
        if self._stopping:
            await asyncio.gather(*self._stopping)
        if self.processor.sink is not None:
            await self.processor.sink.aclose()

    def status(self) -> Dict[str, Any]:
        return {
            "isProcessing": self.processor.is_processing,
            "autoSyncActive": self.is_running,
            "intervalSeconds": self.interval_seconds,
            "mode": self.processor.mode,
        }
