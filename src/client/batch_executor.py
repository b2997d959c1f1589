"""Bounded-concurrency batch execution with per-item error capture."""

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from src.models.data_models import BatchItemResult, BatchResult

Operation = Callable[[], Awaitable[Any]]


async def run_batch(
    operations: Sequence[Operation],
    batch_size: int = 10,
    batch_delay_ms: int = 1000,
    sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    logger: Optional['StructuredLogger'] = None,
) -> BatchResult:
    """
    Run operations in chunks of `batch_size`, waiting `batch_delay_ms` between chunks.

    Operations inside a chunk run concurrently; a failing operation never
    cancels its siblings. Every operation gets exactly one entry in
    `results`, in input order.

    Args:
        operations: Zero-argument coroutine functions
        batch_size: Maximum operations in flight at once
        batch_delay_ms: Pause between chunks (not after the last one)
        sleeper: Async sleep function (default: asyncio.sleep)
        logger: Optional structured logger

    Returns:
        BatchResult with per-item outcomes and success/failure counts

    Raises:
        ValueError: batch_size < 1 or batch_delay_ms < 0
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got: {batch_size}")
    if batch_delay_ms < 0:
        raise ValueError(f"batch_delay_ms must not be negative, got: {batch_delay_ms}")

    results: List[BatchItemResult] = []

    for start in range(0, len(operations), batch_size):
        if start > 0 and batch_delay_ms > 0:
            await sleeper(batch_delay_ms / 1000.0)

        chunk = operations[start:start + batch_size]
        chunk_start = time.monotonic()
        outcomes = await asyncio.gather(*(op() for op in chunk), return_exceptions=True)

        succeeded = 0
        for offset, outcome in enumerate(outcomes):
            index = start + offset
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                results.append(BatchItemResult(index=index, error=outcome))
            else:
                succeeded += 1
                results.append(BatchItemResult(index=index, value=outcome))

        if logger:
            logger.batch_processed(
                batch_size=len(chunk),
                succeeded=succeeded,
                failed=len(chunk) - succeeded,
                elapsed_ms=round((time.monotonic() - chunk_start) * 1000, 2),
            )

    success_count = sum(1 for r in results if r.ok)
    return BatchResult(
        results=results,
        success_count=success_count,
        failure_count=len(results) - success_count,
    )
