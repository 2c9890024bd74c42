# scrnaseq_integrate/parallel.py

import logging
import threading
from typing import Callable, Iterable, TypeVar

from joblib import Parallel, delayed

from .errors import PipelineCancelledError

log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancellationToken:
    """Cooperative cancellation flag, checked between batches or pairs."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str | None = None) -> None:
        if self._event.is_set():
            raise PipelineCancelledError("Pipeline run was cancelled", stage=stage)


def run_tasks(
    func: Callable[[T], R],
    items: Iterable[T],
    n_jobs: int = 1,
    cancel_token: CancellationToken | None = None,
    stage: str | None = None
) -> list[R]:
    """
    Runs `func` over independent items and returns results in input order.

    Tasks share no mutable state; the caller aggregates once all of them have
    finished. With n_jobs == 1 tasks run sequentially in the calling thread,
    otherwise on a joblib thread pool (numpy and scipy release the GIL in
    the heavy parts). n_jobs=-1 uses all available cores.
    """
    items = list(items)

    def _guarded(item):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(stage)
        return func(item)

    if n_jobs == 1 or len(items) <= 1:
        return [_guarded(item) for item in items]

    log.debug(f"Running {len(items)} tasks for stage '{stage}' with n_jobs={n_jobs}")
    return Parallel(n_jobs=n_jobs, prefer="threads")(delayed(_guarded)(item) for item in items)
