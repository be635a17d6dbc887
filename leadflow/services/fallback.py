"""Ordered fallback strategies.

Each strategy is an async callable returning a Result. A failed Result (or an
exception) moves on to the next strategy. The first success wins and carries
the strategy's name in ``Result.source``.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from leadflow.logging_config import get_logger
from leadflow.services.result import Result

logger = get_logger("fallback")

T = TypeVar("T")


@dataclass
class Strategy(Generic[T]):
    name: str
    run: Callable[[], Awaitable[Result[T]]]


class FallbackChain(Generic[T]):
    def __init__(self, operation: str, strategies: list[Strategy[T]]):
        if not strategies:
            raise ValueError("FallbackChain needs at least one strategy")
        self.operation = operation
        self.strategies = strategies

    async def run(self, context: Optional[dict[str, Any]] = None) -> Result[T]:
        errors: list[str] = []
        for strategy in self.strategies:
            try:
                result = await strategy.run()
            except Exception as exc:
                result = Result.failure(str(exc), "strategy_error")

            if result.ok:
                if errors:
                    logger.warning(
                        f"{self.operation} served by fallback strategy {strategy.name}",
                        extra={"context": {**(context or {}), "failed": errors}},
                    )
                return result.served_by(strategy.name)

            errors.append(f"{strategy.name}: {result.error}")
            logger.info(
                f"{self.operation} strategy {strategy.name} failed",
                extra={"context": {**(context or {}), "error": result.error}},
            )

        logger.error(
            f"{self.operation} exhausted all strategies",
            extra={"context": {**(context or {}), "failed": errors}},
        )
        return Result.failure("; ".join(errors), "all_strategies_failed")
