"""Join-all-settled execution of independent generation tasks.

Inside a Prefect flow run every item is its own ``fan-out-item`` task run,
submitted to the flow's task runner, so each portrait, environment or clip
shows up (and fails) individually. Called directly, outside any flow, the
same item function runs on a local thread pool.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, TypeVar

from prefect import task
from prefect.cache_policies import NO_CACHE
from prefect.context import FlowRunContext
from prefect.futures import as_completed as as_settled

from reelforge.errors import ErrorReport, inspect_error

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@task(
    name="fan-out-item",
    task_run_name="{label}[{key}]",
    retries=0,
    cache_policy=NO_CACHE,
)
def run_item(fn: Callable[[], V], label: str, key: Any) -> V:
    return fn()


def _settle_in_flow(
    tasks: Mapping[K, Callable[[], V]], label: str
) -> Iterator[tuple[K, Callable[[], V]]]:
    futures = {
        run_item.submit(fn, label=label, key=key): key for key, fn in tasks.items()
    }
    for fut in as_settled(list(futures)):
        yield futures[fut], fut.result


def _settle_locally(
    tasks: Mapping[K, Callable[[], V]], label: str
) -> Iterator[tuple[K, Callable[[], V]]]:
    with ThreadPoolExecutor(max_workers=len(tasks)) as executor:
        futures = {
            executor.submit(run_item.fn, fn, label, key): key for key, fn in tasks.items()
        }
        for fut in as_completed(futures):
            yield futures[fut], fut.result


def fan_out(
    tasks: Mapping[K, Callable[[], V]],
    *,
    on_complete: Callable[[K, V], None] | None = None,
    on_error: Callable[[K, ErrorReport], None] | None = None,
    label: str = "fan-out",
) -> dict[K, V]:
    """Run every task concurrently and return the successful results by key.

    A task that raises (or returns ``None``) is logged and left out of the
    result: an absent key is the partial-failure signal, nothing is re-raised
    and nothing is retried. Callbacks fire in completion order from this
    thread; a failing callback is logged and does not affect the result.
    """
    if not tasks:
        return {}

    in_flow = FlowRunContext.get() is not None
    logger.info(
        "%s: launching %d task(s)%s", label, len(tasks), " as task runs" if in_flow else ""
    )
    settle = _settle_in_flow if in_flow else _settle_locally
    results: dict[K, V] = {}

    for key, outcome in settle(tasks, label):
        try:
            value = outcome()
        except Exception as exc:
            report = inspect_error(exc)
            logger.warning("%s: task %r failed: %s", label, key, report.summary)
            _notify(on_error, key, report)
            continue
        if value is None:
            report = ErrorReport(summary="task returned no result", type="EmptyResult")
            logger.warning("%s: task %r returned nothing", label, key)
            _notify(on_error, key, report)
            continue
        results[key] = value
        _notify(on_complete, key, value)

    logger.info("%s: %d/%d task(s) succeeded", label, len(results), len(tasks))
    return results


def _notify(callback: Callable[..., None] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.warning("fan-out callback failed", exc_info=True)
