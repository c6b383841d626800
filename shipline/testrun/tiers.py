"""The tier schedule as a pure function of the attempt index."""

from __future__ import annotations

from typing import Iterable, Sequence

from shipline.testrun.models import TestTier

DEFAULT_PARALLELISM: tuple[int, ...] = (4, 2, 1)


def validate_schedule(schedule: Sequence[int]) -> tuple[int, ...]:
    """Check a parallelism schedule and return it as a tuple.

    Each tier must use strictly less parallelism than the one before, and
    the last tier must be sequential.

    Raises
    ------
    ValueError
        If the schedule is empty, not strictly decreasing, or does not
        end at 1.
    """
    values = tuple(int(v) for v in schedule)
    if not values:
        raise ValueError("tier schedule must not be empty")
    if any(v < 1 for v in values):
        raise ValueError(f"parallelism must be >= 1: {values}")
    if any(b >= a for a, b in zip(values, values[1:])):
        raise ValueError(f"parallelism must strictly decrease per tier: {values}")
    if values[-1] != 1:
        raise ValueError(f"final tier must be sequential (parallelism 1): {values}")
    return values


def tier_for(
    attempt_index: int,
    *,
    carried_failures: Iterable[str] = (),
    full_scope: Iterable[str] | None = None,
    known_slow: Iterable[str] = (),
    schedule: Sequence[int] = DEFAULT_PARALLELISM,
) -> TestTier | None:
    """Return the tier for zero-based *attempt_index*, or *None* past the end.

    * attempt 0 runs *full_scope* (or the whole suite when it is *None*)
      in one invocation at the first parallelism;
    * middle attempts run *carried_failures* one test per invocation;
    * the final attempt adds *known_slow* to the carried failures and runs
      everything one test at a time.
    """
    values = validate_schedule(schedule)
    if attempt_index < 0:
        raise ValueError("attempt_index must be >= 0")
    if attempt_index >= len(values):
        return None

    level = attempt_index + 1
    parallelism = values[attempt_index]

    if attempt_index == 0:
        scope = frozenset(full_scope) if full_scope is not None else frozenset()
        return TestTier(
            level=level,
            parallelism=parallelism,
            scope=scope,
            full_suite=full_scope is None,
        )

    scope = frozenset(carried_failures)
    if attempt_index == len(values) - 1:
        scope = scope | frozenset(known_slow)
    return TestTier(level=level, parallelism=parallelism, scope=scope, isolated=True)
