"""Control-loop driver — runs supervision cycles on a fixed interval.

  1. Write the pid file, reattach sessions from the recovery snapshot
  2. Run one cycle across all projects, then wait `poll_interval`
  3. Between cycles (and while waiting) check for shutdown:
     - the runtime's running flag (SIGINT / SIGTERM)
     - the shutdown sentinel written by `shepherd stop`
     - max_runtime_hours elapsed
  4. On exit: write the recovery snapshot, prune the budget ledger,
     remove the pid file

Only setup failures escape run(); everything inside a cycle is isolated
per project by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from shepherd.orchestrator import Orchestrator, OrchestratorRuntime

logger = logging.getLogger(__name__)

WAIT_SLICE_SECONDS = 1.0


class Daemon:
    """Polling coordinator. One cycle per interval until told to stop."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        poll_interval: float = 120,
        max_runtime_hours: float = 0.0,
        runtime: OrchestratorRuntime | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.poll_interval = poll_interval
        self.max_runtime_hours = max_runtime_hours
        self.runtime = runtime or OrchestratorRuntime()
        self._sleep = sleep

    @property
    def pid_path(self) -> Path:
        return self.store.pid_path

    @property
    def shutdown_path(self) -> Path:
        return self.store.shutdown_path

    # ── Public API ──────────────────────────────────────────────────

    async def run(self, max_cycles: int | None = None) -> OrchestratorRuntime:
        """Run cycles until shutdown. Returns the final runtime counters."""
        self.orchestrator.startup()
        self._clear_stale_sentinel()
        self._write_pid()
        self._install_signal_handlers()
        logger.info(
            "Daemon started (pid %d, interval %ss, max runtime %s)",
            os.getpid(), self.poll_interval,
            f"{self.max_runtime_hours}h" if self.max_runtime_hours else "unlimited",
        )

        try:
            while not self._check_shutdown():
                await self.orchestrator.run_cycle(self.runtime)
                if max_cycles is not None and self.runtime.cycles >= max_cycles:
                    break
                await self._wait_interval()
            return self.runtime
        finally:
            self.runtime.running = False
            await self._finish()

    def request_stop(self) -> None:
        if self.runtime.running:
            logger.info("Shutdown requested — stopping after the current cycle")
        self.runtime.running = False

    # ── Shutdown ────────────────────────────────────────────────────

    def _check_shutdown(self) -> bool:
        """True once a stop was requested by flag, sentinel or runtime limit."""
        if not self.runtime.running:
            return True
        if self.shutdown_path.exists():
            logger.info("Shutdown sentinel found")
            try:
                self.shutdown_path.unlink()
            except OSError:
                pass
            self.runtime.running = False
            return True
        if self.max_runtime_hours and self.runtime.elapsed_hours() >= self.max_runtime_hours:
            logger.info("Max runtime of %.2fh reached", self.max_runtime_hours)
            self.runtime.running = False
            return True
        return False

    async def _wait_interval(self) -> None:
        """Sleep until the next cycle, waking early on shutdown."""
        deadline = time.monotonic() + self.poll_interval
        while not self._check_shutdown():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await self._sleep(min(WAIT_SLICE_SECONDS, remaining))

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform / outside the main thread
                pass

    async def _finish(self) -> None:
        try:
            self.orchestrator.write_recovery_snapshot()
        except OSError as e:
            logger.error("Could not write recovery snapshot: %s", e)
        try:
            removed = self.orchestrator.policy.ledger.prune()
            if removed:
                logger.info("Pruned %d stale budget days", removed)
        except OSError as e:
            logger.warning("Budget ledger prune failed: %s", e)
        await self.orchestrator.close()
        self._cleanup()
        logger.info(
            "Daemon stopped after %d cycles (%d decisions, %d project failures)",
            self.runtime.cycles, self.runtime.decisions, self.runtime.project_failures,
        )

    # ── PID Management ──────────────────────────────────────────────

    def _clear_stale_sentinel(self) -> None:
        if self.shutdown_path.exists():
            self.shutdown_path.unlink()

    def _write_pid(self) -> None:
        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.pid_path.write_text(str(os.getpid()))

    def _cleanup(self) -> None:
        if self.pid_path.exists():
            try:
                self.pid_path.unlink()
            except OSError:
                pass


# ── Control Helpers ─────────────────────────────────────────────────


def request_shutdown(state_dir: str | Path) -> bool:
    """Ask a running daemon to stop after its current cycle.

    Returns True if a daemon pid file was present.
    """
    state_dir = Path(state_dir).expanduser().resolve()
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / "shutdown").write_text("stop\n")
    return (state_dir / "daemon.pid").exists()


def check_daemon_health(state_dir: str | Path) -> dict:
    """Check whether a daemon is alive for this state directory.

    Returns dict with: alive (bool), pid (int|None), shutdown_pending (bool).
    """
    state_dir = Path(state_dir).expanduser().resolve()
    pid_path = state_dir / "daemon.pid"

    result = {
        "alive": False,
        "pid": None,
        "shutdown_pending": (state_dir / "shutdown").exists(),
    }

    if pid_path.exists():
        try:
            pid = int(pid_path.read_text().strip())
            result["pid"] = pid
            os.kill(pid, 0)  # Signal 0 = existence check
            result["alive"] = True
        except (ValueError, ProcessLookupError, PermissionError):
            result["alive"] = False

    return result
