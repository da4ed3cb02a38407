"""
Result type for billing operations.

Workflow entry points return ``Ok(value)`` or ``Err(error)`` so callers can
tell expected domain failures apart from bugs. Internal helpers raise
``BillingError`` subclasses; ``returns_result`` converts them at the
boundary.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, NoReturn, ParamSpec, TypeAlias, TypeVar

from flowledger.platform.billing.exceptions import BillingError, LedgerInvariantError

T = TypeVar("T")
P = ParamSpec("P")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    @property
    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self) -> NoReturn:
        raise ValueError("Called unwrap_err on an Ok result")


@dataclass(frozen=True, slots=True)
class Err:
    error: BillingError

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        raise self.error

    def unwrap_err(self) -> BillingError:
        return self.error


Result: TypeAlias = Ok[T] | Err


def returns_result(
    func: Callable[P, Awaitable[T]],
) -> Callable[P, Awaitable[Result[T]]]:
    """Wrap an async function so domain errors come back as ``Err``.

    ``LedgerInvariantError`` and non-billing exceptions propagate.
    """

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Result[T]:
        try:
            return Ok(await func(*args, **kwargs))
        except LedgerInvariantError:
            raise
        except BillingError as exc:
            return Err(exc)

    return wrapper


__all__ = ["Ok", "Err", "Result", "returns_result"]
