from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

# Correlation fields every JSON log line carries, set while an engine operation runs.
CONTEXT_FIELDS = ("position_id", "epoch", "operation", "request_id")
_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    field: ContextVar(field, default=None) for field in CONTEXT_FIELDS
}


def get_logging_context() -> dict[str, str | None]:
    context: dict[str, str | None] = {}
    for field, context_var in _CONTEXT_VARS.items():
        value = context_var.get()
        if value is not None:
            context[field] = value
    return context


@contextmanager
def with_logging_context(**context: object) -> Iterator[None]:
    tokens: dict[str, object] = {}
    try:
        for key, value in context.items():
            context_var = _CONTEXT_VARS.get(key)
            if context_var is None or value is None:
                continue
            tokens[key] = context_var.set(str(value))
        yield
    finally:
        for key, token in tokens.items():
            _CONTEXT_VARS[key].reset(token)


@contextmanager
def with_position_context(
    position_id: str, *, epoch: int | None = None, operation: str | None = None
) -> Iterator[None]:
    """Scope log lines to one position operation; epoch is the one open when it started."""
    with with_logging_context(position_id=position_id, epoch=epoch, operation=operation):
        yield


@contextmanager
def with_hedge_request_context(request_id: int) -> Iterator[None]:
    with with_logging_context(request_id=request_id):
        yield
