from __future__ import annotations

import logging
from typing import Any

from volhedge.domain.errors import EngineError
from volhedge.domain.events import Event, OracleDegraded
from volhedge.observability import get_instrumentation


def _level_for(event: Event) -> int:
    if isinstance(event, OracleDegraded):
        return logging.WARNING
    return logging.INFO


def emit_event(logger: logging.Logger | logging.LoggerAdapter, event: Event) -> None:
    payload = event.as_payload()
    logger.log(_level_for(event), "position_event", extra={"extra": payload})
    try:
        get_instrumentation().counter("position_events_total", attrs={"event": event.name})
    except Exception:  # noqa: BLE001
        return None


def emit_rejection(
    logger: logging.Logger | logging.LoggerAdapter, operation: str, error: EngineError
) -> None:
    payload: dict[str, Any] = {"operation": operation, **error.as_payload()}
    level = logging.INFO if error.retryable else logging.WARNING
    logger.log(level, "operation_rejected", extra={"extra": payload})
    try:
        get_instrumentation().counter(
            "operation_rejections_total",
            attrs={"operation": operation, "error_code": str(error.code)},
        )
    except Exception:  # noqa: BLE001
        return None
