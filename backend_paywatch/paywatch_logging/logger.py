"""
PayWatch log output: one JSON object per line on stdout.

Every record carries timestamp, level, event_type and logger. Listener and
donation records add entity_id (campaign id or "platform"); verification
records add tx_hash. Addresses and hashes go through short() so a line stays
readable without losing the prefix needed to search an explorer.

This module imports nothing from backend_paywatch; every other module imports it.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL_VALUE = getattr(logging, LOG_LEVEL, logging.INFO)

# LOG_FORMAT=json (default) for shipping; anything else renders for a terminal
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()


def _add_timestamp(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """UTC ISO-8601 timestamp unless the caller supplied one."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _normalize_event(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Expose the event name as event_type (and message) for log queries."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    if "message" not in event_dict and "event_type" in event_dict:
        event_dict["message"] = str(event_dict["event_type"])
    return event_dict


def configure_structlog() -> None:
    """Install the PayWatch processor chain. Runs once, on first import."""
    processor_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
        _normalize_event,
    ]
    if LOG_FORMAT == "json":
        processor_chain.append(structlog.processors.JSONRenderer(default=str))
    else:
        processor_chain.append(
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        )
    structlog.configure(
        processors=processor_chain,
        wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVEL_VALUE),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Module logger with logger=name bound. The first positional argument is the
    snake_case event name:
        logger = get_logger(__name__)
        logger.info("donation_recorded", entity_id=12, tx_hash="0xab...", amount="50")
    Output (JSON): {"event_type": "donation_recorded", "entity_id": 12, ..., "timestamp": "...", "level": "info", "logger": "module.name"}
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_entity(entity_id: Any) -> structlog.BoundLogger:
    """Return a logger with entity_id bound to all subsequent log calls."""
    return get_logger("backend_paywatch").bind(entity_id=entity_id)


def short(value: str | None, keep: int = 10) -> str:
    """Shorten an address or hash for log fields: 0x1234abcd..."""
    if not value:
        return ""
    return value[:keep] + "..." if len(value) > keep else value
