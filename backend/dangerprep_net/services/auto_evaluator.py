from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..config import settings
from ..errors import NetworkError
from .intelligence import NetworkIntelligence, network_intelligence


logger = logging.getLogger(__name__)


class AutoEvaluator:
    """Periodic network evaluation while the API server runs."""

    def __init__(self, intelligence: Optional[NetworkIntelligence] = None, interval: Optional[float] = None) -> None:
        self._intelligence = intelligence or network_intelligence
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> float:
        return float(self._interval or settings.evaluation_interval)

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("Auto evaluation started (every %ss)", self.interval)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await asyncio.wait([self._task])
            self._task = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(self._intelligence.evaluate)
            except NetworkError as exc:
                logger.warning("Evaluation failed: %s", exc)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected evaluation error: %s", exc)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


auto_evaluator = AutoEvaluator()
