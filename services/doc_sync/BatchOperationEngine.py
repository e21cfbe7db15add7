import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from services.doc_sync.ProgressTracker import ProgressTracker
from shared.errors import BatchRollbackError
from shared.helper.HelperConfig import HelperConfig
from shared.models.batch import BatchItemResult, BatchKind, BatchOperationResult, BatchStatus

T = TypeVar("T")

CANCELLED_ERROR = "cancelled"
ABORTED_ERROR = "not started: batch aborted after a failure"


class CancelToken:
    """Cooperative cancellation flag, checked before each item starts."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class BatchOptions(Generic[T]):
    """Options of a single engine run.

    Attributes:
        concurrency: Maximum items in flight, defaults to BATCH_CONCURRENCY.
        transactional: Undo every success and raise BatchRollbackError if any item fails.
        undo: Compensation for one successful item, called with (item, operation result).
        cancel_token: Stops scheduling of items that have not started yet.
        tracker: Receives a record() call after every settled item.
        item_id: Maps an item to the id reported in the result, defaults to str(item).
    """

    concurrency: int | None = None
    transactional: bool = False
    undo: Callable[[T, Any], Awaitable[None]] | None = None
    cancel_token: CancelToken | None = None
    tracker: ProgressTracker | None = None
    item_id: Callable[[T], str] | None = None


class BatchOperationEngine:
    """Runs one async operation over many items with a bounded worker pool.

    Outcomes are captured per item; in the default mode one failure never stops
    its siblings. The aggregate result always satisfies
    successful + failed == total and success == (failed == 0).
    """

    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self.default_concurrency = int(helper_config.get_number_val("BATCH_CONCURRENCY", default=10))

    async def run(
        self,
        items: Sequence[T],
        operation: Callable[[T], Awaitable[Any]],
        options: BatchOptions[T] | None = None,
    ) -> BatchOperationResult:
        """Process items and aggregate their outcomes.

        Args:
            items (Sequence[T]): The items to process.
            operation (Callable[[T], Awaitable[Any]]): Processes one item; raising marks the item failed.
            options (BatchOptions[T] | None): Concurrency, transactional and cancellation settings.

        Returns:
            BatchOperationResult: One result entry per item, in input order.

        Raises:
            ValueError: If transactional mode is requested without an undo callback.
            BatchRollbackError: In transactional mode, after every prior success was undone.
        """
        options = options or BatchOptions()
        if options.transactional and options.undo is None:
            raise ValueError("Transactional batches require an undo callback.")

        items = list(items)
        total = len(items)
        ids = [options.item_id(item) if options.item_id else str(item) for item in items]
        tracker = options.tracker or ProgressTracker(total=total, kind=BatchKind.SYNC)
        token = options.cancel_token or CancelToken()
        concurrency = max(1, options.concurrency or self.default_concurrency)

        results: list[BatchItemResult | None] = [None] * total
        completed: list[tuple[int, Any]] = []
        state = {"next": 0, "aborted": False}

        async def _worker() -> None:
            while not state["aborted"] and not token.cancelled and state["next"] < total:
                index = state["next"]
                state["next"] += 1
                try:
                    op_result = await operation(items[index])
                except Exception as exc:
                    error = str(exc) or type(exc).__name__
                    results[index] = BatchItemResult(id=ids[index], success=False, error=error)
                    tracker.record(False)
                    self.logging.warning("Batch %s item %s failed: %s", tracker.batch_id, ids[index], error)
                    if options.transactional:
                        state["aborted"] = True
                else:
                    results[index] = BatchItemResult(id=ids[index], success=True)
                    completed.append((index, op_result))
                    tracker.record(True)

        await asyncio.gather(*(_worker() for _ in range(min(concurrency, total))))

        cancelled = False
        for index in range(total):
            if results[index] is None:
                cancelled = cancelled or token.cancelled
                error = CANCELLED_ERROR if token.cancelled and not state["aborted"] else ABORTED_ERROR
                results[index] = BatchItemResult(id=ids[index], success=False, error=error)
                tracker.record(False)

        final = BatchOperationResult.from_results(results, batch_id=tracker.batch_id, cancelled=cancelled)

        if options.transactional and final.failed > 0:
            await self._rollback(items, ids, completed, options, tracker, final, cancelled)

        tracker.finish(BatchStatus.CANCELLED if cancelled else None)
        self.logging.info(
            "Batch %s finished: %d total, %d successful, %d failed%s",
            tracker.batch_id, final.total, final.successful, final.failed, " (cancelled)" if cancelled else "",
        )
        return final

    async def _rollback(
        self,
        items: list[T],
        ids: list[str],
        completed: list[tuple[int, Any]],
        options: BatchOptions[T],
        tracker: ProgressTracker,
        final: BatchOperationResult,
        cancelled: bool,
    ) -> None:
        undo_errors: list[str] = []
        for index, op_result in reversed(completed):
            try:
                await options.undo(items[index], op_result)
            except Exception as exc:
                undo_errors.append(f"{ids[index]}: {exc}")
                self.logging.error("Batch %s could not undo item %s: %s", tracker.batch_id, ids[index], exc)

        tracker.finish(BatchStatus.CANCELLED if cancelled else BatchStatus.FAILED)
        first_failure = next(
            (r for r in final.results if not r.success and r.error not in (CANCELLED_ERROR, ABORTED_ERROR)),
            next(r for r in final.results if not r.success),
        )
        message = (
            f"Transactional batch {tracker.batch_id} rolled back {len(completed)} items after "
            f"item {first_failure.id} failed: {first_failure.error}"
        )
        if undo_errors:
            message += f" ({len(undo_errors)} undo steps failed)"
        self.logging.error(message)
        raise BatchRollbackError(message, results=final.results, undo_errors=undo_errors)
