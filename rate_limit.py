import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    FrozenSet,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Failure:
    """A classified task failure. ``retryable`` is decided once, at classification."""

    error: BaseException
    status_code: Optional[int] = None
    retryable: bool = False

    @property
    def message(self) -> str:
        return str(self.error) or self.error.__class__.__name__


Result = Union[Ok[T], Failure]
BatchTask = Callable[[], Awaitable[Any]]
ProgressCallback = Callable[[int, int], None]


def classify_failure(
    exc: BaseException, retryable_status_codes: FrozenSet[int] = DEFAULT_RETRYABLE_STATUS_CODES
) -> Failure:
    status_code = getattr(exc, "status_code", None)
    if not isinstance(status_code, int):
        status_code = None
    return Failure(
        error=exc,
        status_code=status_code,
        retryable=status_code is not None and status_code in retryable_status_codes,
    )


@dataclass(frozen=True)
class RateLimitOptions:
    concurrency: int = 3
    delay_between_batches: float = 0.1
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retryable_status_codes: FrozenSet[int] = DEFAULT_RETRYABLE_STATUS_CODES
    on_progress: Optional[ProgressCallback] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")


@dataclass(frozen=True)
class BatchProgress:
    completed: int
    total: int
    index: int


class RateLimitError(RuntimeError):
    """Raised when a task fails terminally; carries how far the batch got."""

    def __init__(
        self,
        message: str,
        *,
        success_count: int,
        total_count: int,
        failed_index: int,
        original_error: BaseException,
        status_code: Optional[int] = None,
        results: Optional[List[Any]] = None,
    ) -> None:
        super().__init__(message)
        self.success_count = success_count
        self.total_count = total_count
        self.failed_index = failed_index
        self.original_error = original_error
        self.status_code = status_code
        self.results = results if results is not None else []

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "successCount": self.success_count,
            "totalCount": self.total_count,
            "failedIndex": self.failed_index,
            "originalError": str(self.original_error),
        }


def _backoff_delay(base_delay: float, attempt: int) -> float:
    return base_delay * (2 ** attempt) * (0.5 + random.random())


class RateLimitedBatch(Generic[T]):
    """Run tasks in windows of ``concurrency`` and yield a progress event per success.

    Iterating drives the batch; it can be iterated once. Every window after the
    first waits ``delay_between_batches`` before starting. When any task in a
    window fails terminally the window is still awaited, then ``RateLimitError``
    is raised for the lowest failing index and no further windows start.
    ``results`` holds task results in input order once iteration finishes.
    """

    def __init__(self, tasks: Sequence[BatchTask], options: Optional[RateLimitOptions] = None) -> None:
        self._tasks = list(tasks)
        self.options = options or RateLimitOptions()
        self._results: List[Optional[T]] = [None] * len(self._tasks)
        self.completed = 0
        self._started = False
        self._finished = False

    @property
    def total(self) -> int:
        return len(self._tasks)

    @property
    def results(self) -> List[T]:
        if not self._finished:
            raise RuntimeError("batch has not finished")
        return list(self._results)  # type: ignore[arg-type]

    def __aiter__(self) -> AsyncIterator[BatchProgress]:
        if self._started:
            raise RuntimeError("RateLimitedBatch can only be iterated once")
        self._started = True
        return self._run()

    async def _attempt(self, task: BatchTask) -> Result:
        try:
            value = await task()
        except Exception as exc:
            return classify_failure(exc, self.options.retryable_status_codes)
        if isinstance(value, (Ok, Failure)):
            return value
        return Ok(value)

    async def _run_with_retry(self, index: int) -> Tuple[int, Result, int]:
        task = self._tasks[index]
        attempt = 0
        while True:
            result = await self._attempt(task)
            if isinstance(result, Ok):
                return index, result, attempt + 1
            if not result.retryable or attempt >= self.options.max_retries:
                return index, result, attempt + 1
            delay = _backoff_delay(self.options.retry_base_delay, attempt)
            logger.warning(
                "Task %d failed with status %s, retrying in %.2fs (attempt %d/%d)",
                index,
                result.status_code,
                delay,
                attempt + 1,
                self.options.max_retries,
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def _run(self) -> AsyncIterator[BatchProgress]:
        total = self.total
        concurrency = self.options.concurrency
        for start in range(0, total, concurrency):
            if start > 0 and self.options.delay_between_batches > 0:
                await asyncio.sleep(self.options.delay_between_batches)

            window = [
                asyncio.ensure_future(self._run_with_retry(index))
                for index in range(start, min(start + concurrency, total))
            ]
            failures: List[Tuple[int, Failure, int]] = []
            try:
                for next_done in asyncio.as_completed(window):
                    index, result, attempts = await next_done
                    if isinstance(result, Ok):
                        self._results[index] = result.value
                        self.completed += 1
                        yield BatchProgress(completed=self.completed, total=total, index=index)
                    else:
                        failures.append((index, result, attempts))
            finally:
                # In-flight platform calls are never interrupted.
                pending = [future for future in window if not future.done()]
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)

            if failures:
                index, failure, attempts = min(failures, key=lambda item: item[0])
                message = (
                    f"{total}개 작업 중 {index + 1}번째 작업이 {attempts}회 시도 후 실패했습니다: "
                    f"{failure.message}"
                )
                logger.error(
                    "Batch aborted at task %d of %d after %d attempts (%d succeeded): %s",
                    index,
                    total,
                    attempts,
                    self.completed,
                    failure.message,
                )
                raise RateLimitError(
                    message,
                    success_count=self.completed,
                    total_count=total,
                    failed_index=index,
                    original_error=failure.error,
                    status_code=failure.status_code,
                    results=list(self._results),
                )
        self._finished = True


async def execute_with_rate_limit(
    tasks: Sequence[BatchTask],
    options: Optional[RateLimitOptions] = None,
    **overrides: Any,
) -> List[Any]:
    """Run ``tasks`` through a :class:`RateLimitedBatch` and return their results.

    Keyword overrides replace fields of ``options`` (``concurrency=2`` and so on).
    """
    opts = options or RateLimitOptions()
    if overrides:
        opts = replace(opts, **overrides)
    batch: RateLimitedBatch[Any] = RateLimitedBatch(tasks, opts)
    async for event in batch:
        if opts.on_progress is not None:
            opts.on_progress(event.completed, event.total)
    return batch.results
