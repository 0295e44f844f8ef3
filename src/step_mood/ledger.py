"""Per-hour step bookkeeping and the deterministic gap-derivation rule.

Gap rule
~~~~~~~~
When an hour was never measured, its delta is derived from cumulative
baselines: ``total_at_end(hour) - total_at_end(last known hour)``.  If several
consecutive hours are missing, the whole span's steps go to the *latest*
missing hour and every earlier gap hour is recorded as zero.  The rule does not
try to guess how activity was actually distributed.

The pure helpers :func:`derive_hour_records` and :func:`fill_interior_gaps`
compute records without touching storage; :class:`StepLedger` persists them.
"""

from __future__ import annotations

import datetime as dt

import structlog

from step_mood.models import HourlyStepRecord
from step_mood.storage.repository import HourlyStepRepository

logger = structlog.get_logger(__name__)


# ── Pure derivation ───────────────────────────────────────────


def _span_records(
    date: dt.date,
    first_hour: int,
    last_hour: int,
    start_total: int,
    end_total: int,
) -> list[HourlyStepRecord]:
    """Records for hours ``first_hour..last_hour`` covering ``start_total → end_total``."""
    end_total = max(start_total, end_total)
    records = [
        HourlyStepRecord(date=date, hour=h, steps=0, last_recorded_cumulative_total=start_total)
        for h in range(first_hour, last_hour)
    ]
    records.append(
        HourlyStepRecord(
            date=date,
            hour=last_hour,
            steps=end_total - start_total,
            last_recorded_cumulative_total=end_total,
        )
    )
    return records


def derive_hour_records(
    records: dict[int, HourlyStepRecord],
    date: dt.date,
    hour: int,
    total_at_hour_end: int,
) -> list[HourlyStepRecord]:
    """Derive *hour* (and any unrecorded hours just before it) from a running total.

    Walks back to the last recorded hour before *hour*; with none, the day's
    baseline is 0.  Returns the records to write, ordered by hour.
    """
    baseline_hour = next((h for h in range(hour - 1, -1, -1) if h in records), None)
    start_total = records[baseline_hour].last_recorded_cumulative_total if baseline_hour is not None else 0
    first_hour = baseline_hour + 1 if baseline_hour is not None else 0
    return _span_records(date, first_hour, hour, start_total, max(0, total_at_hour_end))


def fill_interior_gaps(
    records: dict[int, HourlyStepRecord],
    date: dt.date,
    through_hour: int,
) -> list[HourlyStepRecord]:
    """Derive records for missing hours in ``[0, through_hour)``.

    Each run of missing hours is bounded by the following recorded hour, whose
    starting total is ``cumulative - steps``.  Runs with no recorded hour after
    them are left alone; they are resolved by :func:`derive_hour_records`.
    """
    derived: list[HourlyStepRecord] = []
    hour = 0
    while hour < through_hour:
        if hour in records:
            hour += 1
            continue
        run_start = hour
        while hour < through_hour and hour not in records:
            hour += 1
        run_end = hour - 1
        successor = next((records[h] for h in range(run_end + 1, 24) if h in records), None)
        if successor is None:
            continue
        start_total = records[run_start - 1].last_recorded_cumulative_total if run_start - 1 in records else 0
        end_total = successor.last_recorded_cumulative_total - successor.steps
        derived.extend(_span_records(date, run_start, run_end, start_total, end_total))
    return derived


# ── Ledger ────────────────────────────────────────────────────


class StepLedger:
    """Durable per-(date, hour) step deltas.

    Every write is a keyed upsert, so recording the same hour twice with the
    same inputs leaves storage unchanged.
    """

    def __init__(self, repository: HourlyStepRepository | None = None) -> None:
        self._repo = repository or HourlyStepRepository()

    async def record_hour(
        self,
        date: dt.date,
        hour: int,
        steps: int,
        cumulative_total_at_hour_end: int,
    ) -> HourlyStepRecord:
        """Upsert one hour, clamping steps to ``>= 0`` and keeping totals non-decreasing."""
        if not 0 <= hour <= 23:
            raise ValueError(f"hour must be in [0, 23], got {hour}")
        earlier = [r for r in await self._repo.get_for_date(date) if r.hour < hour]
        floor = max((r.last_recorded_cumulative_total for r in earlier), default=0)
        record = HourlyStepRecord(
            date=date,
            hour=hour,
            steps=max(0, steps),
            last_recorded_cumulative_total=max(floor, cumulative_total_at_hour_end, 0),
        )
        await self._repo.upsert(record)
        logger.debug(
            "ledger.hour_recorded",
            date=date.isoformat(),
            hour=hour,
            steps=record.steps,
            cumulative=record.last_recorded_cumulative_total,
        )
        return record

    async def record_many(self, records: list[HourlyStepRecord]) -> None:
        await self._repo.upsert_many(records)
        if records:
            logger.info(
                "ledger.hours_derived",
                date=records[0].date.isoformat(),
                hours=[r.hour for r in records],
                steps=[r.steps for r in records],
            )

    async def get_hour(self, date: dt.date, hour: int) -> HourlyStepRecord | None:
        return await self._repo.get(date, hour)

    async def get_hours_for_date(self, date: dt.date) -> list[HourlyStepRecord]:
        return await self._repo.get_for_date(date)

    async def last_recorded_hour(self, date: dt.date) -> int | None:
        records = await self._repo.get_for_date(date)
        return records[-1].hour if records else None

    async def last_recorded_cumulative_total(self, date: dt.date) -> int:
        records = await self._repo.get_for_date(date)
        return max((r.last_recorded_cumulative_total for r in records), default=0)

    async def total_for_date(self, date: dt.date) -> int:
        """Sum of recorded hourly deltas for *date*."""
        return sum(r.steps for r in await self._repo.get_for_date(date))

    async def find_gaps(self, date: dt.date, through_hour: int) -> list[int]:
        """Hours in ``[0, through_hour)`` with no record."""
        recorded = {r.hour for r in await self._repo.get_for_date(date)}
        return [h for h in range(max(0, through_hour)) if h not in recorded]

    async def derive_hour(self, date: dt.date, hour: int, total_at_hour_end: int) -> list[HourlyStepRecord]:
        """Compute (without writing) the records that settle *hour* at *total_at_hour_end*."""
        records = {r.hour: r for r in await self._repo.get_for_date(date)}
        return derive_hour_records(records, date, hour, total_at_hour_end)

    async def heal_gaps(self, date: dt.date, through_hour: int) -> list[HourlyStepRecord]:
        """Derive and persist records for interior gaps before *through_hour*."""
        records = {r.hour: r for r in await self._repo.get_for_date(date)}
        derived = fill_interior_gaps(records, date, through_hour)
        await self.record_many(derived)
        return derived

    async def purge_older_than(self, cutoff: dt.date) -> int:
        removed = await self._repo.delete_older_than(cutoff)
        if removed:
            logger.info("ledger.purged", cutoff=cutoff.isoformat(), removed=removed)
        return removed
