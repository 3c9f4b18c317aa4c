"""jq filter evaluation for gate and summary expressions.

Expressions are evaluated with the jq library against native JSON values
(dict, list, str, int, float, bool, None as produced by json.loads).
Evaluation never raises: compile and runtime errors are returned in the
FilterResult, so a malformed expression only affects its own call.

Falsy results (the gate drop condition) are exactly:
- an error,
- no output at all (e.g. `select(...)` that did not match),
- a single output that is `false` or `null`.
A program producing several outputs is truthy.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, List, Optional

import jq

logger = logging.getLogger(__name__)


@dataclass
class FilterResult:
    """Result of evaluating one expression against one value.

    Attributes:
        values: Every output produced by the program, in order.
        error: Error message if compilation or evaluation failed.
    """

    values: List[Any] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_falsy(self) -> bool:
        if self.error is not None or not self.values:
            return True
        return len(self.values) == 1 and (
            self.values[0] is False or self.values[0] is None
        )

    def projection(self) -> Any:
        """Collapse outputs into one JSON value.

        Returns:
            The single output, a list for several outputs, None for none.
        """
        if not self.values:
            return None
        if len(self.values) == 1:
            return self.values[0]
        return list(self.values)


def fallback_projection(value: Any) -> Any:
    """Generic compact projection used when no summary filter applies.

    Args:
        value: Parsed JSON payload.

    Returns:
        {"fields": sorted keys} for objects, {"items": n} for arrays,
        {"type": <json type>} for scalars.
    """
    if isinstance(value, dict):
        return {"fields": sorted(str(key) for key in value)}
    if isinstance(value, list):
        return {"items": len(value)}
    return {"type": json_type(value)}


def json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


@lru_cache(maxsize=256)
def _compile(expression: str):
    return jq.compile(expression)


class FilterExecutor:
    """Stateless evaluator of jq expressions.

    One instance serves all subscriptions; compiled programs are cached
    per expression.
    """

    def evaluate(self, expression: str, value: Any) -> FilterResult:
        """Evaluate an expression against a JSON value.

        Args:
            expression: jq program text.
            value: Parsed JSON value.

        Returns:
            FilterResult with outputs, or with error set on failure.
        """
        try:
            program = _compile(expression)
            return FilterResult(values=program.input_value(value).all())
        except Exception as e:
            logger.debug(
                "jq evaluation failed",
                extra={"expression": expression, "error": str(e)},
            )
            return FilterResult(error=str(e) or type(e).__name__)

    async def evaluate_async(
        self,
        expression: str,
        value: Any,
        timeout: float,
    ) -> FilterResult:
        """Evaluate in a worker thread, bounded by a timeout.

        A timed-out evaluation is reported as an error result. The worker
        thread itself cannot be interrupted and finishes in the background.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.evaluate, expression, value),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "jq evaluation timed out after %.1fs",
                timeout,
                extra={"expression": expression},
            )
            return FilterResult(error=f"Evaluation timed out after {timeout}s")
