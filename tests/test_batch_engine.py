"""Tests for the bounded, transactional batch engine."""

import asyncio

import pytest

from services.doc_sync.BatchOperationEngine import (
    ABORTED_ERROR,
    CANCELLED_ERROR,
    BatchOperationEngine,
    BatchOptions,
    CancelToken,
)
from services.doc_sync.ProgressTracker import ProgressTracker
from shared.errors import BatchRollbackError
from shared.models.batch import BatchKind, BatchStatus


@pytest.fixture
def engine(helper_config) -> BatchOperationEngine:
    return BatchOperationEngine(helper_config)


def failing_on(*bad):
    async def _operation(item):
        await asyncio.sleep(0)
        if item in bad:
            raise RuntimeError(f"{item} exploded")
        return f"done-{item}"

    return _operation


class TestAggregation:
    """Tests for per-item outcomes and counters."""

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_siblings(self, engine):
        """Test one failing item leaves the other items successful."""
        tracker = ProgressTracker(total=5, kind=BatchKind.SYNC)

        result = await engine.run(["a", "b", "c", "d", "e"], failing_on("c"), BatchOptions(tracker=tracker))

        assert [r.id for r in result.results] == ["a", "b", "c", "d", "e"]
        assert [r.success for r in result.results] == [True, True, False, True, True]
        assert result.results[2].error == "c exploded"
        assert (result.total, result.successful, result.failed, result.success) == (5, 4, 1, False)
        assert result.batch_id == tracker.batch_id
        assert tracker.status == BatchStatus.COMPLETED_WITH_ERRORS
        assert (tracker.processed, tracker.successful, tracker.failed) == (5, 4, 1)
        assert tracker.percentage == 100.0

    @pytest.mark.asyncio
    async def test_all_successful(self, engine):
        """Test a clean run is a success and completes the tracker."""
        tracker = ProgressTracker(total=3, kind=BatchKind.UPLOAD)

        result = await engine.run([1, 2, 3], failing_on(), BatchOptions(tracker=tracker, item_id=lambda i: f"item-{i}"))

        assert result.success
        assert result.successful + result.failed == result.total == 3
        assert [r.id for r in result.results] == ["item-1", "item-2", "item-3"]
        assert tracker.status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_batch(self, engine):
        """Test an empty batch succeeds trivially."""
        result = await engine.run([], failing_on())

        assert (result.total, result.successful, result.failed, result.success) == (0, 0, 0, True)

    @pytest.mark.asyncio
    async def test_concurrency_is_capped(self, engine):
        """Test no more than the requested number of items run at once."""
        in_flight = 0
        peak = 0

        async def _operation(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        result = await engine.run(list(range(8)), _operation, BatchOptions(concurrency=2))

        assert result.success
        assert peak == 2


class TestTransactional:
    """Tests for rollback of transactional batches."""

    @pytest.mark.asyncio
    async def test_rollback_undoes_successes_in_reverse_order(self, engine):
        """Test every success is undone newest first and unstarted items are reported."""
        undone = []

        async def _undo(item, op_result):
            undone.append((item, op_result))

        tracker = ProgressTracker(total=4, kind=BatchKind.DELETE)
        options = BatchOptions(concurrency=1, transactional=True, undo=_undo, tracker=tracker)

        with pytest.raises(BatchRollbackError) as exc_info:
            await engine.run(["a", "b", "c", "d"], failing_on("c"), options)

        assert undone == [("b", "done-b"), ("a", "done-a")]
        results = exc_info.value.results
        assert [(r.id, r.success) for r in results] == [("a", True), ("b", True), ("c", False), ("d", False)]
        assert results[2].error == "c exploded"
        assert results[3].error == ABORTED_ERROR
        assert "item c failed" in str(exc_info.value)
        assert exc_info.value.undo_errors == []
        assert tracker.status == BatchStatus.FAILED

    @pytest.mark.asyncio
    async def test_undo_errors_are_collected(self, engine):
        """Test a failing compensation step does not stop the others."""
        undone = []

        async def _undo(item, op_result):
            if item == "b":
                raise RuntimeError("cannot restore b")
            undone.append(item)

        options = BatchOptions(concurrency=1, transactional=True, undo=_undo)

        with pytest.raises(BatchRollbackError) as exc_info:
            await engine.run(["a", "b", "c"], failing_on("c"), options)

        assert undone == ["a"]
        assert exc_info.value.undo_errors == ["b: cannot restore b"]

    @pytest.mark.asyncio
    async def test_transactional_requires_undo(self, engine):
        """Test transactional mode without a compensation callback is rejected."""
        with pytest.raises(ValueError):
            await engine.run(["a"], failing_on(), BatchOptions(transactional=True))


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_skips_unstarted_items(self, engine):
        """Test items not yet started when the token fires are reported as cancelled."""
        token = CancelToken()
        tracker = ProgressTracker(total=5, kind=BatchKind.SYNC)

        async def _operation(item):
            await asyncio.sleep(0)
            if item == 2:
                token.cancel()

        result = await engine.run(
            [1, 2, 3, 4, 5], _operation, BatchOptions(concurrency=1, cancel_token=token, tracker=tracker)
        )

        assert result.cancelled
        assert [r.success for r in result.results] == [True, True, False, False, False]
        assert {r.error for r in result.results[2:]} == {CANCELLED_ERROR}
        assert tracker.status == BatchStatus.CANCELLED
        assert tracker.processed == 5

    @pytest.mark.asyncio
    async def test_cancelled_transactional_batch_rolls_back(self, engine):
        """Test cancelling a transactional batch undoes what already succeeded."""
        token = CancelToken()
        undone = []

        async def _operation(item):
            if item == "b":
                token.cancel()
            return item

        async def _undo(item, op_result):
            undone.append(item)

        tracker = ProgressTracker(total=3, kind=BatchKind.UPLOAD)
        options = BatchOptions(concurrency=1, transactional=True, undo=_undo, cancel_token=token, tracker=tracker)

        with pytest.raises(BatchRollbackError):
            await engine.run(["a", "b", "c"], _operation, options)

        assert undone == ["b", "a"]
        assert tracker.status == BatchStatus.CANCELLED
