"""Structured logging for image builds.

Every entry emitted while a build runs carries that build's ``build_id``;
credential-bearing keys are masked before rendering. Output goes to stderr
so the CLI can keep stdout for its summary.

Usage::

    from image_builder.observability import configure_logging, get_logger

    configure_logging(json_output=True)  # once, from the entry point
    logger = get_logger(__name__)
    logger.info("vswitch_created", vswitch_id="vsw-123", zone_id="cn-hangzhou-b")
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, TextIO

import structlog

build_id_ctx: ContextVar[str | None] = ContextVar("build_id", default=None)

REDACTED = "***"
_CREDENTIAL_KEYS = frozenset(
    {"access_key", "secret_key", "security_token", "ssh_password", "password"}
)

_configured = False
_handler: logging.Handler | None = None


def _add_build_id(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Tag the entry with the build it belongs to."""
    bid = build_id_ctx.get()
    if bid is not None:
        event_dict["build_id"] = bid
    return event_dict


def _redact_credentials(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    for key in _CREDENTIAL_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        _add_build_id,
        _redact_credentials,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def build_formatter(*, json_output: bool) -> structlog.stdlib.ProcessorFormatter:
    """stdlib formatter rendering structlog events as JSON lines or console text."""
    if json_output:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
    stream: TextIO | None = None,
) -> None:
    """Route structlog through stdlib logging. Later calls are no-ops.

    Args:
        level: Log level name. Defaults to LOG_LEVEL or INFO.
        json_output: JSON lines instead of console text. Defaults to
            LOG_FORMAT == "json".
        stream: Destination; stderr when omitted.
    """
    global _configured, _handler
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "console") == "json"

    structlog.configure(
        processors=[
            *shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    _handler = logging.StreamHandler(stream or sys.stderr)
    _handler.setFormatter(build_formatter(json_output=json_output))

    root = logging.getLogger()
    root.addHandler(_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Request-level chatter from the HTTP stack.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def reset_logging() -> None:
    """Undo ``configure_logging``; used between tests."""
    global _configured, _handler
    if _handler is not None:
        logging.getLogger().removeHandler(_handler)
        _handler = None
    structlog.reset_defaults()
    _configured = False


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the given name."""
    return structlog.get_logger(name)
