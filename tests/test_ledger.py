"""Tests for the step ledger and the gap-derivation rule."""

from __future__ import annotations

import datetime as dt

import pytest

from step_mood.ledger import StepLedger, derive_hour_records, fill_interior_gaps
from step_mood.models import HourlyStepRecord
from step_mood.storage.repository import HourlyStepRepository

DAY = dt.date(2024, 3, 11)


def rec(hour: int, steps: int, cumulative: int) -> HourlyStepRecord:
    return HourlyStepRecord(date=DAY, hour=hour, steps=steps, last_recorded_cumulative_total=cumulative)


class TestDeriveHourRecords:
    def test_direct_predecessor(self):
        records = {4: rec(4, 100, 900)}
        derived = derive_hour_records(records, DAY, 5, 1_300)
        assert [(r.hour, r.steps, r.last_recorded_cumulative_total) for r in derived] == [(5, 400, 1_300)]

    def test_gap_span_goes_to_latest_hour(self):
        records = {0: rec(0, 0, 0), 1: rec(1, 200, 200), 2: rec(2, 800, 1_000)}
        derived = derive_hour_records(records, DAY, 5, 1_400)
        assert [(r.hour, r.steps, r.last_recorded_cumulative_total) for r in derived] == [
            (3, 0, 1_000),
            (4, 0, 1_000),
            (5, 400, 1_400),
        ]

    def test_no_baseline_starts_from_zero(self):
        derived = derive_hour_records({}, DAY, 2, 750)
        assert [(r.hour, r.steps) for r in derived] == [(0, 0), (1, 0), (2, 750)]

    def test_total_below_baseline_clamps_to_zero(self):
        derived = derive_hour_records({3: rec(3, 50, 500)}, DAY, 4, 450)
        assert derived[-1].steps == 0
        assert derived[-1].last_recorded_cumulative_total == 500


class TestFillInteriorGaps:
    def test_fills_run_before_recorded_hour(self):
        records = {1: rec(1, 100, 100), 5: rec(5, 50, 650)}
        derived = fill_interior_gaps(records, DAY, 5)
        assert [(r.hour, r.steps, r.last_recorded_cumulative_total) for r in derived] == [
            (0, 0, 0),
            (2, 0, 100),
            (3, 0, 100),
            (4, 500, 600),
        ]

    def test_trailing_run_without_successor_is_left(self):
        assert fill_interior_gaps({0: rec(0, 10, 10)}, DAY, 4) == []

    def test_no_gaps(self):
        records = {h: rec(h, 0, 0) for h in range(3)}
        assert fill_interior_gaps(records, DAY, 3) == []


class TestStepLedger:
    @pytest.fixture
    def ledger(self, session) -> StepLedger:
        return StepLedger(HourlyStepRepository(session))

    @pytest.mark.asyncio
    async def test_record_and_read(self, ledger):
        await ledger.record_hour(DAY, 8, 300, 300)
        await ledger.record_hour(DAY, 9, 150, 450)

        hour = await ledger.get_hour(DAY, 9)
        assert hour is not None and hour.steps == 150
        assert await ledger.last_recorded_hour(DAY) == 9
        assert await ledger.last_recorded_cumulative_total(DAY) == 450
        assert len(await ledger.get_hours_for_date(DAY)) == 2

    @pytest.mark.asyncio
    async def test_record_is_idempotent(self, ledger):
        await ledger.record_hour(DAY, 3, 120, 500)
        await ledger.record_hour(DAY, 3, 120, 500)
        hours = await ledger.get_hours_for_date(DAY)
        assert [(h.hour, h.steps, h.last_recorded_cumulative_total) for h in hours] == [(3, 120, 500)]

    @pytest.mark.asyncio
    async def test_clamps_negative_and_decreasing_totals(self, ledger):
        await ledger.record_hour(DAY, 1, 400, 400)
        stored = await ledger.record_hour(DAY, 2, -30, 100)
        assert stored.steps == 0
        assert stored.last_recorded_cumulative_total == 400

    @pytest.mark.asyncio
    async def test_rejects_bad_hour(self, ledger):
        with pytest.raises(ValueError):
            await ledger.record_hour(DAY, 24, 1, 1)

    @pytest.mark.asyncio
    async def test_find_gaps(self, ledger):
        for hour in (0, 1, 2, 6):
            await ledger.record_hour(DAY, hour, 0, 0)
        assert await ledger.find_gaps(DAY, 6) == [3, 4, 5]
        assert await ledger.find_gaps(DAY, 0) == []

    @pytest.mark.asyncio
    async def test_heal_gaps_persists_derived_hours(self, ledger):
        await ledger.record_hour(DAY, 0, 0, 0)
        await ledger.record_hour(DAY, 4, 100, 700)
        healed = await ledger.heal_gaps(DAY, 4)
        assert [(r.hour, r.steps) for r in healed] == [(1, 0), (2, 0), (3, 600)]
        assert await ledger.find_gaps(DAY, 4) == []
        assert await ledger.total_for_date(DAY) == 700

    @pytest.mark.asyncio
    async def test_purge_older_than(self, ledger):
        old = DAY - dt.timedelta(days=40)
        await ledger.record_hour(old, 10, 5, 5)
        await ledger.record_hour(DAY, 10, 5, 5)
        assert await ledger.purge_older_than(DAY - dt.timedelta(days=30)) == 1
        assert await ledger.get_hours_for_date(old) == []
        assert len(await ledger.get_hours_for_date(DAY)) == 1
