from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from settlement import models
from settlement.config import settings
from settlement.core.errors import SettlementError
from settlement.database import SessionLocal
from settlement.services.batch_aggregator import aggregate_company_batch
from settlement.services.lock_manager import LockManager

logger = logging.getLogger("settlement.scheduler")


@dataclass(frozen=True)
class AggregationRunResult:
    companies: int
    batches_created: int
    failures: int


def aggregate_all_active_companies(lock_manager: LockManager | None = None) -> AggregationRunResult:
    """Run aggregation once for every active company.

    A failure for one company is logged and does not stop the others; the
    per-company lock keeps this safe next to operator-triggered runs.
    """

    locks = lock_manager or LockManager()
    created = 0
    failures = 0

    db = SessionLocal()
    try:
        company_ids = [
            cid
            for (cid,) in db.query(models.Company.id)
            .filter(models.Company.active.is_(True))
            .order_by(models.Company.id.asc())
            .all()
        ]
        for company_id in company_ids:
            try:
                batch = aggregate_company_batch(db, company_id=company_id, lock_manager=locks)
            except SettlementError as exc:
                failures += 1
                logger.warning(
                    "scheduled_aggregation_failed",
                    extra={"company_id": company_id, "code": exc.code, "error": exc.message},
                )
                continue
            if batch is not None:
                created += 1
    finally:
        db.close()

    return AggregationRunResult(
        companies=len(company_ids), batches_created=created, failures=failures
    )


class DailyJobRunner:
    """
    Minimal dependency-free daily scheduler.
    NOTE: In multi-worker setups, each worker will start this thread.
    Duplicate runs are serialized by the per-company batch lock.
    """

    def __init__(self, hour_utc: int | None = None) -> None:
        self.hour_utc = int(hour_utc if hour_utc is not None else settings.aggregation_daily_utc_hour)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="daily-aggregation", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def next_run_after(self, now: datetime) -> datetime:
        next_run = now.replace(hour=self.hour_utc, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run = next_run + timedelta(days=1)
        return next_run

    def _loop(self) -> None:
        while not self._stop.is_set():
            now = datetime.now(timezone.utc)
            next_run = self.next_run_after(now)

            wait_s = max(0.0, (next_run - now).total_seconds())
            logger.info(
                "scheduler_wait",
                extra={"next_run_utc": next_run.isoformat(), "wait_seconds": int(wait_s)},
            )
            if self._stop.wait(wait_s):
                break

            try:
                res = aggregate_all_active_companies()
                logger.info(
                    "scheduled_aggregation_ok",
                    extra={
                        "companies": res.companies,
                        "batches_created": res.batches_created,
                        "failures": res.failures,
                    },
                )
            except Exception as exc:
                logger.exception("scheduled_aggregation_crashed", extra={"error": str(exc)})


# Singleton runner for FastAPI lifecycle
runner = DailyJobRunner()
