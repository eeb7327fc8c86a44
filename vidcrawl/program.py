"""Single-process run lock backed by the ``program`` table."""

from __future__ import annotations

import logging
import os
import socket
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import ProgramLock

from .errors import CrawlError
from .settings import utcnow

LOGGER = logging.getLogger(__name__)

PROGRAM_LOCK_ID = 1
DEFAULT_STALE_AFTER = timedelta(minutes=2)


class ProgramLockError(CrawlError):
    """Raised when the program row cannot be read or updated."""


class ProgramAlreadyRunningError(ProgramLockError):
    """Another live process holds the run lock."""

    def __init__(self, pid: int, host: Optional[str], heartbeat: Optional[datetime]) -> None:
        super().__init__(
            f"vidcrawl is already running (pid {pid} on {host or 'unknown host'}, "
            f"last heartbeat {heartbeat.isoformat() if heartbeat else 'never'})"
        )
        self.pid = pid
        self.host = host
        self.heartbeat = heartbeat


@dataclass(slots=True)
class LockStatus:
    running: bool
    pid: int
    host: Optional[str]
    started_at: Optional[datetime]
    heartbeat: Optional[datetime]


class ProgramController:
    """Marks the program running in the database and keeps the heartbeat fresh."""

    def __init__(
        self,
        session_factory,
        *,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utcnow,
        pid_source: Callable[[], int] = os.getpid,
        host_source: Callable[[], str] = socket.gethostname,
    ) -> None:
        self._session_factory = session_factory
        self._stale_after = stale_after
        self._clock = clock
        self._pid_source = pid_source
        self._host_source = host_source
        self._pid: Optional[int] = None

    def start(self) -> int:
        now = self._clock()
        pid = self._pid_source()
        host = self._host_source()
        try:
            with self._session_factory() as session:
                row = self._lock_row(session)
                if row.running:
                    last_seen = row.heartbeat or row.started_at
                    if last_seen is not None and now - last_seen < self._stale_after:
                        raise ProgramAlreadyRunningError(row.pid, row.host, last_seen)
                    LOGGER.warning(
                        "Detected stale process (pid %s on %s, last heartbeat %s); resetting run lock",
                        row.pid,
                        row.host,
                        last_seen,
                    )
                row.running = True
                row.pid = pid
                row.host = host
                row.started_at = now
                row.heartbeat = now
                session.commit()
        except SQLAlchemyError as exc:
            raise ProgramLockError(str(exc)) from exc

        self._pid = pid
        LOGGER.info("Run lock acquired by pid %s on %s", pid, host)
        return pid

    def heartbeat(self) -> None:
        try:
            with self._session_factory() as session:
                row = self._lock_row(session)
                if not row.running or (self._pid is not None and row.pid != self._pid):
                    raise ProgramLockError(
                        f"run lock is no longer held by this process (running={row.running}, pid={row.pid})"
                    )
                row.heartbeat = self._clock()
                session.commit()
        except SQLAlchemyError as exc:
            raise ProgramLockError(str(exc)) from exc

    def quit(self) -> None:
        try:
            with self._session_factory() as session:
                row = self._lock_row(session)
                if not row.running:
                    raise ProgramLockError("run lock was not marked running")
                if self._pid is not None and row.pid != self._pid:
                    # Taken over after this process went stale; the successor owns it now.
                    LOGGER.warning(
                        "Run lock now belongs to pid %s on %s; leaving it in place",
                        row.pid,
                        row.host,
                    )
                    self._pid = None
                    return
                row.running = False
                row.pid = 0
                session.commit()
        except SQLAlchemyError as exc:
            raise ProgramLockError(str(exc)) from exc
        LOGGER.info("Run lock released")
        self._pid = None

    def status(self) -> LockStatus:
        try:
            with self._session_factory() as session:
                row = self._lock_row(session)
                return LockStatus(
                    running=bool(row.running),
                    pid=row.pid or 0,
                    host=row.host,
                    started_at=row.started_at,
                    heartbeat=row.heartbeat,
                )
        except SQLAlchemyError as exc:
            raise ProgramLockError(str(exc)) from exc

    def _lock_row(self, session: Session) -> ProgramLock:
        row = session.get(ProgramLock, PROGRAM_LOCK_ID, with_for_update=True)
        if row is None:
            row = ProgramLock(id=PROGRAM_LOCK_ID, running=False, pid=0)
            session.add(row)
            session.flush()
        return row


class HeartbeatThread(threading.Thread):
    """Refreshes the run lock heartbeat until stopped."""

    def __init__(self, controller: ProgramController, interval: float) -> None:
        super().__init__(name="vidcrawl-heartbeat", daemon=True)
        self._controller = controller
        self._interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self._controller.heartbeat()
            except ProgramLockError as exc:
                LOGGER.warning("Heartbeat failed: %s", exc)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
