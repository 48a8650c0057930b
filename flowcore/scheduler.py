"""Interval schedules that fire trigger events."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Iterable, List

from .config import ScheduleConfig
from .errors import FlowcoreError
from .ingress import EventIngress

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs one asyncio task per schedule.

    A tick is numbered by wall-clock interval (``time() // interval``), so
    several processes sharing a store produce the same event id for the
    same tick and only one workflow results.
    """

    def __init__(self, ingress: EventIngress, schedules: Iterable[ScheduleConfig] = ()) -> None:
        self._ingress = ingress
        self.schedules: List[ScheduleConfig] = list(schedules)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

    def add(self, schedule: ScheduleConfig) -> None:
        self.schedules.append(schedule)
        if self._running:
            self._spawn(schedule)

    async def start(self) -> None:
        self._running = True
        for schedule in self.schedules:
            self._spawn(schedule)
        if self.schedules:
            logger.info(f"Scheduler started with {len(self.schedules)} schedule(s)")

    def _spawn(self, schedule: ScheduleConfig) -> None:
        if schedule.name not in self._tasks:
            self._tasks[schedule.name] = asyncio.create_task(
                self._run(schedule), name=f"schedule-{schedule.name}"
            )

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def fire(self, schedule: ScheduleConfig, tick: int) -> None:
        try:
            result = await self._ingress.scheduled(
                schedule.name, schedule.type, schedule.payload, tick
            )
        except FlowcoreError as e:
            logger.error(f"Schedule '{schedule.name}' tick {tick} failed: {e}")
            return
        logger.debug(f"Schedule '{schedule.name}' fired event {result.event_id}")

    async def _run(self, schedule: ScheduleConfig) -> None:
        while True:
            now = time.time()
            tick = int(now // schedule.interval) + 1
            await asyncio.sleep(tick * schedule.interval - now)
            await self.fire(schedule, tick)
