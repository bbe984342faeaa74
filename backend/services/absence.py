import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import TypedDict

from pydantic import ValidationError

from database.db import (
    connect_db,
    get_records_for_session,
    get_sessions_due_for_expiry,
    get_student_ids_in_class,
    insert_absences,
    set_session_status,
)
from database.models import AttendanceSession, to_utc, utcnow

logger = logging.getLogger(__name__)


class ReconcileReport(TypedDict):
    absent_marked: int
    sessions_expired: int
    sessions_failed: int
    per_session: dict[str, int]


def expire_session(session: AttendanceSession, *, now: datetime | None = None) -> int:
    """
    Close one session: every student of the class without a record gets an
    auto-marked absence, then the session becomes expired. One transaction,
    so a failure leaves the session active for the next sweep.
    """
    marker = to_utc(now or utcnow())
    conn = connect_db()
    try:
        student_ids = get_student_ids_in_class(session.class_id, conn=conn)
        covered = {r.student_id for r in get_records_for_session(session.id, conn=conn)}
        missing = [sid for sid in student_ids if sid not in covered]

        inserted = insert_absences(session.id, missing, marker, conn=conn)
        set_session_status(session.id, "expired", conn=conn)
        conn.commit()
        return inserted
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def reconcile_expired_sessions(*, now: datetime | None = None) -> ReconcileReport:
    """
    One sweep over sessions whose window has passed but are still active.
    Sessions fail independently; a skipped session stays in the work set.
    """
    marker = to_utc(now or utcnow())
    report: ReconcileReport = {
        "absent_marked": 0,
        "sessions_expired": 0,
        "sessions_failed": 0,
        "per_session": {},
    }

    try:
        work_set = get_sessions_due_for_expiry(marker)
    except sqlite3.Error:
        logger.exception("Absence sweep could not load expired sessions")
        return report

    for row in work_set:
        session_id = row.get("id")
        try:
            session = AttendanceSession(**row)
            inserted = expire_session(session, now=marker)
        except (sqlite3.Error, ValidationError):
            report["sessions_failed"] += 1
            logger.exception("Absence sweep skipped session %s; retrying next run", session_id)
            continue

        report["absent_marked"] += inserted
        report["sessions_expired"] += 1
        report["per_session"][session_id] = inserted
        logger.info("Marked %s students absent for session %s", inserted, session_id)

    if work_set:
        logger.info(
            "Auto-marked %s students absent across %s expired sessions (%s failed)",
            report["absent_marked"],
            report["sessions_expired"],
            report["sessions_failed"],
        )
    return report


class AbsenceSweeper:
    """
    Periodic absence reconciliation on the running event loop: once at start,
    then every `interval_minutes`.
    """

    def __init__(self, interval_minutes: float = 5):
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self.interval_seconds = interval_minutes * 60
        self.runs = 0
        self.last_report: ReconcileReport | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> ReconcileReport:
        report = await asyncio.to_thread(reconcile_expired_sessions)
        self.runs += 1
        self.last_report = report
        return report

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                # keep the schedule alive; the next tick retries
                logger.exception("Absence sweep crashed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            "Auto-mark absent job started (runs every %s minutes)",
            self.interval_seconds / 60,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Auto-mark absent job stopped")
