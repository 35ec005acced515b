"""Structured event logging shared by the ingest and incident pipelines."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping

# Attributes owned by LogRecord; passing them through `extra` raises KeyError.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


def _encode_context(context: Mapping[str, Any]) -> str:
    try:
        return json.dumps(context, default=str, sort_keys=True)
    except TypeError:
        return json.dumps({k: str(v) for k, v in context.items()}, sort_keys=True)


def _safe_extra(event: str, context: Mapping[str, Any]) -> Dict[str, Any]:
    extra: Dict[str, Any] = {"event": event}
    for key, value in context.items():
        extra[f"ctx_{key}" if key in _RESERVED_ATTRS else key] = value
    return extra


def log_event(
    logger: logging.Logger,
    event: str,
    message: str,
    *,
    level: str = "info",
    exc_info: bool = False,
    **fields: Any,
) -> None:
    """Log `message` tagged with a dotted event name and JSON context.

    Example:
        log_event(LOGGER, "clustering.pass", "Clustered detections", processed=12)

    `None` fields are dropped. The context is appended to the message and also
    attached to the record via `extra` so structured handlers can pick it up.
    """
    context = {k: v for k, v in fields.items() if v is not None}
    payload = f"[{event}] {message}"
    if context:
        payload = f"{payload} | {_encode_context(context)}"

    log_fn = getattr(logger, level, logger.info)
    log_fn(payload, exc_info=exc_info, extra=_safe_extra(event, context))
