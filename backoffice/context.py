from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(value: str | None) -> Iterator[str | None]:
    """Bind a correlation id for the duration of a request, job or evaluation batch."""
    token = set_correlation_id(value)
    try:
        yield value
    finally:
        reset_correlation_id(token)
