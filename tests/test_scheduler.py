"""Tests for the maintenance scheduler and the daemon lifecycle."""

import asyncio
from datetime import datetime

import pytest

from memlayer.daemon import MemlayerDaemon
from memlayer.memory.graduation import RetentionReport
from memlayer.scheduler.jobs import Scheduler, _parse_cron_hour


class Calls:
    def __init__(self, service, fail_graduation=False):
        self.graduation = 0
        self.retention = 0
        self.insights = 0
        self.fail_graduation = fail_graduation
        service.graduation.recompute_levels = self.recompute
        service.graduation.retention_sweep = self.sweep
        service.insights.extract = self.extract

    def recompute(self, *args, **kwargs):
        self.graduation += 1
        if self.fail_graduation:
            raise RuntimeError("boom")

    async def sweep(self, *args, **kwargs):
        self.retention += 1
        return RetentionReport()

    def extract(self, *args, **kwargs):
        self.insights += 1


class TestScheduler:
    def test_parse_cron_hour(self):
        assert _parse_cron_hour("0 4 * * *") == 4
        assert _parse_cron_hour("30 23 * * *") == 23
        assert _parse_cron_hour("bad") == 4
        assert _parse_cron_hour("0 x * * *") == 4

    @pytest.mark.asyncio
    async def test_retention_once_per_day(self, service, config):
        calls = Calls(service)
        scheduler = Scheduler(service, config)

        await scheduler.tick(datetime(2026, 3, 1, 3, 59))
        await scheduler.tick(datetime(2026, 3, 1, 4, 5))
        await scheduler.tick(datetime(2026, 3, 1, 4, 10))
        await scheduler.tick(datetime(2026, 3, 2, 4, 0))
        assert calls.graduation == 4
        assert calls.retention == 2
        assert calls.insights == 2

    @pytest.mark.asyncio
    async def test_failed_job_does_not_raise(self, service, config):
        calls = Calls(service, fail_graduation=True)
        await Scheduler(service, config).tick(datetime(2026, 3, 1, 12, 0))
        assert calls.graduation == 1

    @pytest.mark.asyncio
    async def test_start_stops_on_shutdown(self, service, config):
        config.scheduler.graduation_interval = 0.01
        calls = Calls(service)
        shutdown = asyncio.Event()
        task = asyncio.create_task(Scheduler(service, config).start(shutdown))
        await asyncio.sleep(0.05)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)
        assert calls.graduation >= 1


class TestDaemon:
    @pytest.mark.asyncio
    async def test_run_and_shutdown(self, service, config, index):
        event_id = service.store_event("s1", "prompt", "remember the daemon").event_id
        daemon = MemlayerDaemon(config, service=service)

        task = asyncio.create_task(daemon.run())
        for _ in range(100):
            if index.has(event_id):
                break
            await asyncio.sleep(0.02)
        assert config.pid_file.exists()
        daemon.request_shutdown()
        await asyncio.wait_for(task, timeout=2)

        assert index.has(event_id)
        assert not config.pid_file.exists()
