"""
Rate-limited sequential batch runner.

Items are processed one at a time in fixed-size batches. The pauses
(item_delay after every item, batch_delay between batches) keep the run
under upstream quotas; a failing item is turned into an ItemError and the
run goes on.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ItemError:
    game_id: str | None
    external_product_id: str | None
    error: str
    stage: str = "stock_check"

    def as_dict(self) -> dict:
        return {
            "game_id": self.game_id,
            "external_product_id": self.external_product_id,
            "error": self.error,
            "stage": self.stage,
        }


@dataclass
class BatchReport:
    batch_sizes: list[int] = field(default_factory=list)
    processed: int = 0
    errors: list[ItemError] = field(default_factory=list)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size < 1:
        raise ValueError("batch size must be >= 1")
    for i in range(0, len(items), size):
        yield items[i:i + size]


class BatchRunner:
    def __init__(
        self,
        batch_size: int = 10,
        item_delay: float = 0.1,
        batch_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.batch_size = batch_size
        self.item_delay = item_delay
        self.batch_delay = batch_delay
        self._sleep = sleep

    def run(
        self,
        items: Sequence[T],
        handler: Callable[[T], None],
        on_error: Callable[[T, Exception], ItemError],
    ) -> BatchReport:
        report = BatchReport()
        batches = list(chunked(items, self.batch_size))
        for index, batch in enumerate(batches):
            report.batch_sizes.append(len(batch))
            for item in batch:
                report.processed += 1
                try:
                    handler(item)
                except Exception as e:
                    report.errors.append(on_error(item, e))
                if self.item_delay:
                    self._sleep(self.item_delay)
            logger.debug(
                "batch_done",
                extra={"batches": f"{index + 1}/{len(batches)}", "errors": len(report.errors)},
            )
            if index < len(batches) - 1 and self.batch_delay:
                self._sleep(self.batch_delay)
        return report
