"""Concurrent utilities - structured fan-out with per-unit outcomes."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from kuberoll.errors import PartialFailureError
from kuberoll.models import UnitOutcome


async def gather_outcomes[I](
    fn: Callable[[I], Awaitable[object]],
    items: Iterable[I],
    *,
    unit: Callable[[I], str] = str,
) -> list[UnitOutcome]:
    """Run ``fn`` once per item concurrently and join all of them.

    Each unit captures its own exception, so a failure in one unit never
    cancels its siblings. Outcomes are returned in input order.

    Args:
        fn: Async function applied to each item.
        items: Items to process. One task is spawned per item.
        unit: Maps an item to the identifier reported in its outcome.

    Returns:
        One UnitOutcome per item.

    Example:
        >>> outcomes = await gather_outcomes(cordon_one, ["node-a", "node-b"])
        >>> [o.unit for o in outcomes if not o.ok]
        ['node-b']
    """

    async def run_one(item: I) -> UnitOutcome:
        try:
            await fn(item)
        except Exception as e:
            return UnitOutcome(unit=unit(item), error=e)
        return UnitOutcome(unit=unit(item))

    items_list = list(items)
    if not items_list:
        return []
    return list(await asyncio.gather(*(run_one(item) for item in items_list)))


def raise_for_failures(operation: str, outcomes: Iterable[UnitOutcome]) -> None:
    """Raise a PartialFailureError naming only the failed units, if any."""
    failures = [o for o in outcomes if not o.ok]
    if failures:
        raise PartialFailureError(operation, failures)
