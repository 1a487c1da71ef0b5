"""Daemon process — always-on background worker.

Usage: python -m memlayer serve

Manages:
- Outbox worker (embeds new events into the similarity index)
- Scheduler (graduation sweep, daily retention sweep)
- PID file (prevent duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from memlayer.config import MemlayerConfig, load_config
from memlayer.core import MemoryService, build_service
from memlayer.scheduler.jobs import Scheduler

logger = logging.getLogger(__name__)


class MemlayerDaemon:
    """Always-on daemon process."""

    def __init__(self, config: MemlayerConfig | None = None, service: MemoryService | None = None) -> None:
        self.config = config or load_config()
        self._service = service
        self._shutdown_event = asyncio.Event()

    # ── PID file management ──────────────────────────────────

    def _write_pid(self) -> None:
        self.config.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_file.write_text(str(os.getpid()))
        logger.info("PID file written: %s (pid=%d)", self.config.pid_file, os.getpid())

    def _remove_pid(self) -> None:
        if self.config.pid_file.exists():
            self.config.pid_file.unlink()

    def _check_existing(self) -> None:
        if not self.config.pid_file.exists():
            return
        try:
            pid = int(self.config.pid_file.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"memlayer daemon already running (pid={pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            # Stale PID file — remove it
            self._remove_pid()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ── Main run loop ────────────────────────────────────────

    async def run(self) -> None:
        self._check_existing()
        self._write_pid()
        self._setup_signals()

        service = self._service or build_service(self.config)
        scheduler = Scheduler(service, self.config)

        logger.info(
            "memlayer daemon starting (root=%s, embedder=%s)",
            self.config.storage.root,
            self.config.embedding.provider,
        )

        worker_task = asyncio.create_task(service.worker.run(self._shutdown_event))
        try:
            await asyncio.gather(
                self._stop_worker_on_shutdown(worker_task),
                scheduler.start(self._shutdown_event),
            )
        except asyncio.CancelledError:
            pass
        finally:
            if not worker_task.done():
                worker_task.cancel()
                await asyncio.gather(worker_task, return_exceptions=True)
            service.close()
            self._remove_pid()
            logger.info("memlayer daemon stopped.")

    async def _stop_worker_on_shutdown(self, worker_task: asyncio.Task) -> None:
        """Wait for shutdown, then cancel an in-flight embedding call so its claim is released."""
        await self._shutdown_event.wait()
        if not worker_task.done():
            worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)
