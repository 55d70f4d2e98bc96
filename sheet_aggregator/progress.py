from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from sheet_aggregator.errors import OperationCancelled

STAGE_DISCOVERING = "Discovering Keys"
STAGE_AGGREGATING = "Aggregating Data"


class CancellationToken:
    """Cooperative cancellation flag polled at sheet and coarse row boundaries."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled()


@dataclass(frozen=True)
class ProgressUpdate:
    stage: str
    sheet_name: str
    current_sheet: int
    total_sheets: int
    current_totals: dict[str, int] = field(default_factory=dict)


ProgressCallback = Callable[[ProgressUpdate], None]


def check_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()
