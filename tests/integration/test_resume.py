"""
Facility Harvester - Crash and Resume Integration Tests

Kills a harvest part way through, damages the tails of the checkpoint log
and the CSV output the way a crash mid-write would, then resumes and checks
that every item ends up in the output exactly once.
"""

import asyncio
import csv
from collections import Counter

import pytest

from harvest.models import CheckpointStatus
from harvest.scheduler import HarvestScheduler


pytestmark = pytest.mark.integration

TOTAL_ITEMS = 50


class SimulatedCrash(BaseException):
    """Stands in for the process being killed; not caught as an item error."""


def output_ids(path):
    with open(path, newline="", encoding="utf-8") as fh:
        return [row["id"] for row in csv.DictReader(fh)]


def crash_after(limit):
    """Process function that completes ``limit`` items, then crashes."""
    calls = {"count": 0}

    async def process(item):
        if calls["count"] >= limit:
            raise SimulatedCrash()
        calls["count"] += 1
        await asyncio.sleep(0)
        return {"id": item.id, "value": item.payload["n"]}

    return process


def recording_process(calls):
    async def process(item):
        calls.append(item.id)
        return {"id": item.id, "value": item.payload["n"]}

    return process


@pytest.fixture
def items(make_items):
    return make_items(TOTAL_ITEMS)


class TestSequentialCrash:
    """Crash with a single worker, so the crash point is exact."""

    @pytest.mark.asyncio
    async def test_resume_after_crash(self, settings, make_settings, make_context, items):
        run_settings = make_settings(harvest_concurrency=1)

        with pytest.raises(SimulatedCrash):
            await HarvestScheduler(make_context(run_settings)).run(items, crash_after(20))

        context = make_context(run_settings)
        assert len(context.checkpoint.load()) == 20
        assert context.checkpoint.status_of("fac-020") == CheckpointStatus.IN_PROGRESS
        assert len(output_ids(settings.output_path)) == 20

        calls = []
        summary = await HarvestScheduler(make_context(run_settings)).run(items, recording_process(calls))

        assert summary.skipped == 20
        assert summary.completed == 30
        assert calls == [item.id for item in items[20:]]

        ids = output_ids(settings.output_path)
        assert ids == [item.id for item in items]

    @pytest.mark.asyncio
    async def test_resume_with_torn_tails(self, settings, make_settings, make_context, items):
        """Half-written lines at the end of both files are discarded."""
        run_settings = make_settings(harvest_concurrency=1)

        with pytest.raises(SimulatedCrash):
            await HarvestScheduler(make_context(run_settings)).run(items, crash_after(20))

        with open(settings.checkpoint_path, "a", encoding="utf-8") as fh:
            fh.write('{"id": "fac-020", "status": "comp')
        with open(settings.output_path, "a", encoding="utf-8") as fh:
            fh.write("fac-020,2")

        calls = []
        summary = await HarvestScheduler(make_context(run_settings)).run(items, recording_process(calls))

        assert summary.completed == 30
        assert len(calls) == 30

        ids = output_ids(settings.output_path)
        assert len(ids) == TOTAL_ITEMS
        assert set(ids) == {item.id for item in items}

        context = make_context(run_settings)
        assert context.checkpoint.stats().completed == TOTAL_ITEMS

    @pytest.mark.asyncio
    async def test_row_written_but_not_checkpointed(self, settings, make_settings, make_context, items):
        """A row that reached the output before the crash is not written twice."""
        run_settings = make_settings(harvest_concurrency=1)

        with pytest.raises(SimulatedCrash):
            await HarvestScheduler(make_context(run_settings)).run(items, crash_after(20))

        with open(settings.output_path, "a", encoding="utf-8") as fh:
            fh.write("fac-020,20\n")

        summary = await HarvestScheduler(make_context(run_settings)).run(items, recording_process([]))

        assert summary.completed == 30
        assert summary.rows_written == 29
        assert Counter(output_ids(settings.output_path)) == Counter(item.id for item in items)


class TestConcurrentCrash:
    """Crash while several workers are in flight."""

    @pytest.mark.asyncio
    async def test_resume_after_concurrent_crash(self, settings, make_settings, make_context, items):
        run_settings = make_settings(harvest_concurrency=5)

        with pytest.raises(SimulatedCrash):
            await HarvestScheduler(make_context(run_settings)).run(items, crash_after(25))
        # Cancelled workers may still have a file write finishing in a thread
        await asyncio.sleep(0.2)

        done_before = make_context(run_settings).checkpoint.load()
        assert 0 < len(done_before) <= 25

        calls = []
        summary = await HarvestScheduler(make_context(run_settings)).run(items, recording_process(calls))

        assert summary.skipped == len(done_before)
        assert not done_before & set(calls)
        assert summary.completed == TOTAL_ITEMS - len(done_before)

        counts = Counter(output_ids(settings.output_path))
        assert set(counts) == {item.id for item in items}
        assert max(counts.values()) == 1

    @pytest.mark.asyncio
    async def test_repeated_crashes_converge(self, settings, make_settings, make_context, items):
        """Several crash-and-resume cycles still end with each item once."""
        run_settings = make_settings(harvest_concurrency=4)

        for _ in range(3):
            with pytest.raises(SimulatedCrash):
                await HarvestScheduler(make_context(run_settings)).run(items, crash_after(10))
            await asyncio.sleep(0.2)

        summary = await HarvestScheduler(make_context(run_settings)).run(items, recording_process([]))

        assert summary.all_terminal
        counts = Counter(output_ids(settings.output_path))
        assert len(counts) == TOTAL_ITEMS
        assert max(counts.values()) == 1
