"""Historical re-runs of a workflow over a date range."""

import calendar
import logging
import threading
import uuid
from datetime import date, timedelta
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from models.state import Run

logger = logging.getLogger(__name__)


class BackfillInterval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class BackfillRequest(BaseModel):
    """Date range and pacing of a backfill."""

    model_config = ConfigDict(frozen=True)

    start_date: date
    end_date: date
    date_field: str | None = None
    interval: BackfillInterval = BackfillInterval.DAILY
    parallel: bool = False
    max_parallel_jobs: int = 1

    @field_validator("max_parallel_jobs")
    @classmethod
    def validate_max_parallel_jobs(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_parallel_jobs must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_range(self) -> "BackfillRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def concurrency(self) -> int:
        return self.max_parallel_jobs if self.parallel else 1


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def backfill_periods(start: date, end: date, interval: BackfillInterval) -> list[date]:
    """Logical dates from start to end inclusive, one per interval."""
    if end < start:
        raise ValueError("end must not be before start")

    periods = []
    step = 0
    while True:
        if interval == BackfillInterval.DAILY:
            current = start + timedelta(days=step)
        elif interval == BackfillInterval.WEEKLY:
            current = start + timedelta(weeks=step)
        else:
            current = _add_months(start, step)
        if current > end:
            return periods
        periods.append(current)
        step += 1


class BackfillJob:
    """Starts one run per period, keeping at most `concurrency` runs in flight."""

    def __init__(
        self,
        workflow_name: str,
        request: BackfillRequest,
        start_run: Callable[[dict[str, Any]], str],
        wait_for_run: Callable[[str], Run],
    ):
        if not workflow_name:
            raise ValueError("workflow_name is required")
        if request is None:
            raise ValueError("request is required")

        self.backfill_id = f"backfill-{uuid.uuid4().hex[:12]}"
        self.workflow_name = workflow_name
        self.request = request
        self.periods = backfill_periods(request.start_date, request.end_date, request.interval)
        self.run_ids: list[str] = []
        self.error: str | None = None

        self._start_run = start_run
        self._wait_for_run = wait_for_run
        self._done = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        logger.info(
            f"Backfill {self.backfill_id} of {self.workflow_name}: "
            f"{len(self.periods)} periods, concurrency {self.request.concurrency}"
        )
        self._thread = threading.Thread(
            target=self.run, name=self.backfill_id, daemon=True
        )
        self._thread.start()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    def parameters_for(self, period: date) -> dict[str, Any]:
        parameters: dict[str, Any] = {
            "logical_date": period.isoformat(),
            "backfill_id": self.backfill_id,
        }
        if self.request.date_field:
            parameters["date_field"] = self.request.date_field
        return parameters

    def run(self) -> None:
        in_flight: list[str] = []
        try:
            for period in self.periods:
                if len(in_flight) >= self.request.concurrency:
                    self._wait_for_run(in_flight.pop(0))
                run_id = self._start_run(self.parameters_for(period))
                self.run_ids.append(run_id)
                in_flight.append(run_id)
                logger.info(f"Backfill {self.backfill_id} started {run_id} for {period}")
            for run_id in in_flight:
                self._wait_for_run(run_id)
            logger.info(f"Backfill {self.backfill_id} finished: {len(self.run_ids)} runs")
        except Exception as e:
            self.error = str(e)
            logger.error(f"Backfill {self.backfill_id} stopped: {e}")
        finally:
            self._done.set()
