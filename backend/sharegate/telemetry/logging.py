from __future__ import annotations

import logging
import os
from typing import Any, Mapping

import structlog


def _get_log_level() -> int:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level, logging.INFO)


def init_logging() -> None:
    """Configure structlog + stdlib logging for JSON output without PII.

    Fields to expect in logs: ts, level, trace_id, user_id_hash, action, duration_ms, result, msg.
    Grant tokens are bearer secrets and only ever appear truncated.
    """
    logging.basicConfig(level=_get_log_level(), format="%(message)s")

    # access logs carry client IPs
    logging.getLogger("uvicorn.access").disabled = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            _rename_level_to_lower,
            _drop_unwanted_keys,
            _truncate_tokens,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(_get_log_level()),
        cache_logger_on_first_use=True,
    )


def _rename_level_to_lower(logger: Any, method_name: str, event_dict: Mapping[str, Any]):
    level = event_dict.get("level") or event_dict.get("levelname")
    if level:
        event_dict = dict(event_dict)
        event_dict["level"] = str(level).lower()
        event_dict.pop("levelname", None)
    return event_dict


UNWANTED_KEYS = {"client", "client_ip", "headers", "request_headers", "client_addr"}


def _drop_unwanted_keys(logger: Any, method_name: str, event_dict: Mapping[str, Any]):
    if not UNWANTED_KEYS.intersection(event_dict.keys()):
        return event_dict
    return {k: v for k, v in event_dict.items() if k not in UNWANTED_KEYS}


TOKEN_KEYS = ("token", "parent_token", "preview_token")


def _truncate_tokens(logger: Any, method_name: str, event_dict: Mapping[str, Any]):
    hits = [k for k in TOKEN_KEYS if isinstance(event_dict.get(k), str)]
    if not hits:
        return event_dict
    event_dict = dict(event_dict)
    for k in hits:
        event_dict[k] = event_dict[k][:8] + "…"
    return event_dict


def get_logger(**bind: Any) -> structlog.stdlib.BoundLogger:  # type: ignore[name-defined]
    log = structlog.get_logger()
    return log.bind(**bind) if bind else log
