"""Structured logging for swapdesk: structlog rendered through stdlib handlers.

Batch passes run inside ``pass_context`` so every line they emit carries
the pass name and a run id. Credentials never reach a sink: any field
whose name marks it as a secret (the 0x key, the cron secret, relayer
signing material, Authorization headers) is masked before rendering.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog

from swapdesk.config import ObservabilityConfig

MASK = "***"

_SECRET_MARKERS = (
    "secret", "private_key", "api_key", "mnemonic", "password",
    "signing_key", "signer_key", "authorization",
)

# Per-request chatter from the HTTP clients polling prices and receipts
_QUIET_LOGGERS = ("httpx", "httpcore")

_handlers: list[logging.Handler] = []


def is_secret_field(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key in list(event_dict):
        if is_secret_field(key):
            event_dict[key] = MASK
    return event_dict


def configure_logging(
    config: ObservabilityConfig | None = None,
    *,
    fmt: str | None = None,
    force: bool = False,
) -> None:
    """Install handlers and the structlog pipeline.

    ``config`` supplies level, format and optional log file; without one,
    ``LOG_LEVEL`` and ``LOG_FORMAT`` from the environment are used and
    nothing is written to disk. ``fmt`` overrides the configured format
    (the CLI always renders to the console). Later calls are no-ops unless
    ``force`` is set, in which case the previous handlers are replaced.
    """
    if _handlers and not force:
        return
    if config is None:
        config = ObservabilityConfig(
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "console"),
            log_file="",
        )
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    render_as = fmt or config.log_format

    root = logging.getLogger()
    for handler in _handlers:
        root.removeHandler(handler)
        handler.close()
    _handlers.clear()

    _handlers.append(logging.StreamHandler(sys.stderr))
    if config.log_file:
        path = Path(config.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _handlers.append(logging.FileHandler(path))

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        mask_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if render_as == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)

    root.setLevel(level)
    for handler in _handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if not _handlers:
        configure_logging()
    return structlog.get_logger(name)


@contextmanager
def pass_context(pass_name: str) -> Iterator[str]:
    """Bind ``pass_name`` and a fresh ``run_id`` for the duration of one pass.

    The previous context is restored on exit, so a pass started from inside
    an API request keeps the request's own bindings afterwards.
    """
    run_id = uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(pass_name=pass_name, run_id=run_id):
        yield run_id
