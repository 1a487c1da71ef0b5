"""Scheduler for periodic memory maintenance using pure asyncio.

Jobs:
- Graduation: recompute retention levels from new citation usage
- Retention: demote/prune stale low-level events, once a day at the cron hour
- Insights: extract pattern and preference insights, right after retention

A failed job is logged and retried on the next tick; levels are always
recomputable from the usage log, so a missed run loses nothing.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memlayer.config import MemlayerConfig
    from memlayer.core import MemoryService

logger = logging.getLogger(__name__)


def _parse_cron_hour(cron_expr: str) -> int:
    """Extract hour from simple cron expression like '0 4 * * *'."""
    parts = cron_expr.split()
    if len(parts) >= 2:
        try:
            return int(parts[1])
        except ValueError:
            pass
    return 4  # default: 4 AM


class Scheduler:
    """Simple asyncio-based scheduler for periodic tasks."""

    def __init__(self, service: MemoryService, config: MemlayerConfig) -> None:
        self._service = service
        self._config = config
        self._retention_hour = _parse_cron_hour(config.scheduler.retention_cron)
        self._interval = config.scheduler.graduation_interval
        self._last_retention_date: str | None = None

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Run scheduled jobs until shutdown_event is set."""
        logger.info(
            "Scheduler started (graduation=%ds, retention@%02d:00)",
            self._interval,
            self._retention_hour,
        )

        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
                break  # shutdown requested
            except asyncio.TimeoutError:
                pass  # interval elapsed — run jobs

            await self.tick()

        logger.info("Scheduler stopped.")

    async def tick(self, now: datetime | None = None) -> None:
        """One scheduler pass: graduation always, retention once per day at the cron hour."""
        await self._graduate()

        now = now or datetime.now()
        today = now.strftime("%Y-%m-%d")
        if now.hour == self._retention_hour and self._last_retention_date != today:
            if await self._retention():
                self._last_retention_date = today
                self._extract_insights()

    async def _graduate(self) -> None:
        try:
            self._service.graduation.recompute_levels()
        except Exception as e:
            logger.error("Graduation sweep failed: %s", e)

    async def _retention(self) -> bool:
        try:
            report = await self._service.graduation.retention_sweep()
        except Exception as e:
            logger.error("Retention sweep failed: %s", e)
            return False
        if report.demoted or report.deleted:
            logger.info("Retention: %d demoted, %d deleted", report.demoted, report.deleted)
        return True

    def _extract_insights(self) -> None:
        try:
            self._service.insights.extract()
        except Exception as e:
            logger.error("Insight extraction failed: %s", e)
