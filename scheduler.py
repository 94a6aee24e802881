#!/usr/bin/env python3
"""
Background update daemon.

Runs a refresh cycle on a fixed interval until asked to stop. Only one daemon
may run per PID file:

- ``Daemon.run()`` refuses to start while the PID file names a live process
  and replaces a stale one
- SIGTERM and SIGINT set a stop event; a cycle that is already running is
  allowed to finish
- on exit the PID file is removed and the scrape queue is drained and closed

``stop_daemon()`` and ``daemon_status()`` act on a daemon running in another
process through its PID file.
"""

import os
import re
import signal
from asyncio import Event, TimeoutError, get_running_loop, wait_for
from logging import FileHandler, Formatter, getLogger
from time import monotonic
from typing import Optional, Tuple

from config import config, get_logger
from errors import ConfigError, DaemonError, RivuletError
from telemetry import trace_span
from utils import format_duration

logger = get_logger("daemon")

UNIT_SECONDS = {'s': 1, 'm': 60, 'h': 3600, 'd': 86400}
INTERVAL_PATTERN = re.compile(r'^(\d+)([smhd]?)$')


def parse_interval(text: str) -> int:
    """Parse "30s", "15m", "1h", "1d" or a bare number of seconds.

    Raises:
        ConfigError: if the value is malformed or zero.
    """
    match = INTERVAL_PATTERN.match(str(text).strip().lower())
    seconds = int(match.group(1)) * UNIT_SECONDS[match.group(2) or 's'] if match else 0
    if seconds <= 0:
        raise ConfigError(f"Invalid interval: {text}. Use format like '1h', '30m', '1d'")
    return seconds


def format_interval(seconds: int) -> str:
    """Render an interval using the largest unit that divides it exactly."""
    for unit in ('d', 'h', 'm'):
        size = UNIT_SECONDS[unit]
        if seconds >= size and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


class DaemonConfig:
    """Settings for one daemon run."""

    def __init__(self, update_interval_secs: int = 3600, update_on_start: bool = True,
                 log_file: Optional[str] = None, pid_file: Optional[str] = None):
        if update_interval_secs <= 0:
            raise ConfigError("Update interval must be positive")
        self.update_interval_secs = update_interval_secs
        self.update_on_start = update_on_start
        self.log_file = log_file
        self.pid_file = pid_file or config.PID_FILE

    @classmethod
    def from_config(cls, interval: Optional[str] = None, log_file: Optional[str] = None) -> "DaemonConfig":
        """Build from the global config; an explicit interval wins over DAEMON_INTERVAL."""
        return cls(
            update_interval_secs=parse_interval(interval or config.DAEMON_INTERVAL),
            update_on_start=config.DAEMON_UPDATE_ON_START,
            log_file=log_file,
        )


def read_pid(pid_file: str) -> Optional[int]:
    try:
        with open(pid_file, 'r') as f:
            return int(f.read().strip())
    except FileNotFoundError:
        return None
    except ValueError:
        logger.warning(f"Ignoring malformed PID file {pid_file}")
        return None


def is_process_running(pid: int) -> bool:
    """Signal 0 checks for existence without touching the process."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


def _remove_pid_file(pid_file: str) -> None:
    try:
        os.remove(pid_file)
    except FileNotFoundError:
        pass


def _release_pid_file(pid_file: str) -> None:
    """Remove the PID file only while it still names this process."""
    if read_pid(pid_file) == os.getpid():
        _remove_pid_file(pid_file)


def stop_daemon(pid_file: Optional[str] = None) -> str:
    """Send SIGTERM to the daemon recorded in the PID file.

    The daemon removes its own PID file on exit; only a stale file is removed here.

    Raises:
        DaemonError: if no daemon is recorded or the signal cannot be sent.
    """
    pid_file = pid_file or config.PID_FILE
    if not os.path.exists(pid_file):
        raise DaemonError("No daemon is running (PID file not found)")
    pid = read_pid(pid_file)
    if pid is None:
        raise DaemonError(f"Invalid PID in PID file {pid_file}")
    if not is_process_running(pid):
        _remove_pid_file(pid_file)
        return f"Daemon was not running; removed stale PID file (PID {pid})"
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as e:
        raise DaemonError(f"Failed to stop daemon (PID {pid}): {e}") from e
    return f"Stop signal sent to daemon (PID {pid})"


def daemon_status(pid_file: Optional[str] = None) -> str:
    pid_file = pid_file or config.PID_FILE
    pid = read_pid(pid_file)
    if pid is None:
        return "Daemon is not running"
    if is_process_running(pid):
        return f"Daemon is running (PID: {pid})"
    return "Daemon is not running (stale PID file)"


class Daemon:
    """Periodic refresh loop around an application context.

    The context must provide ``store``, ``refresh(sources)`` and
    ``shutdown_scraper()``.
    """

    def __init__(self, context, daemon_config: Optional[DaemonConfig] = None):
        self.context = context
        self.config = daemon_config or DaemonConfig()
        self._stop_event: Optional[Event] = None
        self._log_handler: Optional[FileHandler] = None

    def stop(self) -> None:
        """Request shutdown. Takes effect after the current cycle."""
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    def _acquire_pid_file(self) -> None:
        pid_file = self.config.pid_file
        pid = read_pid(pid_file)
        if pid is not None and pid != os.getpid() and is_process_running(pid):
            raise DaemonError(f"Another daemon instance is already running (PID {pid})")
        if pid is not None:
            logger.info(f"Replacing stale PID file {pid_file} (PID {pid})")
        try:
            parent = os.path.dirname(os.path.abspath(pid_file))
            os.makedirs(parent, exist_ok=True)
            with open(pid_file, 'w') as f:
                f.write(f"{os.getpid()}\n")
        except OSError as e:
            raise DaemonError(f"Failed to write PID file {pid_file}: {e}") from e

    def _attach_log_file(self) -> None:
        if not self.config.log_file:
            return
        handler = FileHandler(self.config.log_file)
        handler.setFormatter(Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        getLogger("Rivulet").addHandler(handler)
        self._log_handler = handler

    def _detach_log_file(self) -> None:
        if self._log_handler is not None:
            getLogger("Rivulet").removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    async def run(self) -> None:
        """Run until stopped by a signal or ``stop()``.

        Raises:
            DaemonError: if another instance holds the PID file.
        """
        self._acquire_pid_file()
        self._stop_event = Event()
        loop = get_running_loop()
        handled = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.stop)
                handled.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported here")

        self._attach_log_file()
        interval = self.config.update_interval_secs
        try:
            logger.info(f"Rivulet daemon started (update interval: {format_interval(interval)}, PID: {os.getpid()})")
            if self.config.update_on_start:
                logger.info("Running initial update...")
                await self._safe_update()

            while not self._stop_event.is_set():
                try:
                    await wait_for(self._stop_event.wait(), timeout=interval)
                except TimeoutError:
                    logger.info("Running scheduled update...")
                    await self._safe_update()

            logger.info("Daemon shutting down...")
        finally:
            for sig in handled:
                loop.remove_signal_handler(sig)
            _release_pid_file(self.config.pid_file)
            try:
                await self.context.shutdown_scraper()
            finally:
                self._detach_log_file()

    async def _safe_update(self) -> None:
        try:
            await self.run_update()
        except RivuletError as e:
            logger.error(f"Update failed: {e}")

    @trace_span("daemon.update_cycle", tracer_name="scheduler")
    async def run_update(self) -> Tuple[int, int]:
        """Run one refresh cycle; return (new entries, errors)."""
        start = monotonic()
        sources = await self.context.store.execute('list_sources')
        if not sources:
            logger.info("No feeds to update")
            return 0, 0

        by_id = {source.id: source for source in sources}
        reports = await self.context.refresh(sources)

        total_new = 0
        errors = 0
        for report in reports:
            source = by_id.get(report.source_id)
            name = source.display_title() if source else f"feed {report.source_id}"
            if report.ok:
                total_new += report.new_entries
                if report.new_entries:
                    logger.info(f"  {report.new_entries} new entries from {name}")
            else:
                errors += 1
                logger.info(f"  Error updating {name}: {report.error}")

        logger.info(f"Update complete: {total_new} new entries, {errors} errors ({format_duration(monotonic() - start)})")
        return total_new, errors
