"""Ordered fallback strategies: the first successful attempt wins."""

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Sequence

from .models import AttemptResult


@dataclass
class Strategy:
    name: str
    run: Callable[[], Awaitable[AttemptResult]]


async def run_strategies(strategies: Sequence[Strategy], tag: str) -> AttemptResult:
    """
    Try each strategy in order and return the first success.

    A strategy that raises counts as a failed attempt. When all fail, the
    returned result carries every attempt's error joined with "; ".
    """
    errors: List[str] = []
    for strategy in strategies:
        try:
            result = await strategy.run()
        except Exception as e:
            result = AttemptResult(success=False, error=str(e)[:200], method=strategy.name)

        if result.success:
            result.method = result.method or strategy.name
            print(f"[{tag}] {strategy.name}: OK")
            return result

        errors.append(f"{strategy.name}: {result.error or 'not found'}")
        print(f"[{tag}] {strategy.name}: {result.error or 'not found'}")

    return AttemptResult(success=False, error="; ".join(errors) or "no strategies", method="")


def found(value=None, method: str = "") -> AttemptResult:
    return AttemptResult(success=True, value=value, method=method)


def not_found(error: str = "not found", method: str = "") -> AttemptResult:
    return AttemptResult(success=False, error=error, method=method)
