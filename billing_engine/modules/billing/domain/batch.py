"""
Batch runner shared by the validation and renewal passes.

Each item is handled independently: a failure is logged, counted and
skipped, and the next tick picks the item up again.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

import structlog

from billing_engine.shared.core.config import get_settings
from billing_engine.shared.core.exceptions import DataIntegrityError, TransientError
from billing_engine.shared.core.metrics import BILLING_ITEM_ERRORS

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class BatchResult:
    total: int = 0
    errors: int = 0
    results: List[Any] = field(default_factory=list)

    def count(self, predicate: Callable[[Any], bool] = bool) -> int:
        return sum(1 for r in self.results if predicate(r))


async def process_each(
    job_name: str,
    items: Iterable[T],
    handler: Callable[[T], Awaitable[Any]],
    max_concurrency: Optional[int] = None,
) -> BatchResult:
    """
    Run handler over items with at most max_concurrency in flight
    (1 means strictly sequential). Successful return values are collected.
    """
    items = list(items)
    semaphore = asyncio.Semaphore(max(1, max_concurrency or get_settings().BILLING_MAX_CONCURRENCY))
    batch = BatchResult(total=len(items))

    async def _one(item: T) -> None:
        async with semaphore:
            try:
                batch.results.append(await handler(item))
                return
            except TransientError as e:
                code = e.code
                logger.warning(
                    "billing_item_skipped",
                    job=job_name,
                    item=str(item),
                    code=e.code,
                    error=e.message,
                )
            except DataIntegrityError as e:
                code = e.code
                logger.error(
                    "billing_item_integrity_anomaly",
                    job=job_name,
                    item=str(item),
                    code=e.code,
                    details=e.details,
                )
            except Exception as e:
                code = "unexpected"
                logger.exception("billing_item_failed", job=job_name, item=str(item), error=str(e))
            batch.errors += 1
            BILLING_ITEM_ERRORS.labels(job_name=job_name, error_code=code).inc()

    await asyncio.gather(*(_one(item) for item in items))
    return batch
