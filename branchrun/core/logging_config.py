"""Structured logging configuration using structlog.

Engine modules log through ``structlog.get_logger(__name__)``. While a branch
runs, its hash is bound into the logging context so every event from its
steps, hooks and code blocks can be traced back to the branch.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from branchrun.app.config import get_settings


def _add_app_name(app_name: str):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("app", app_name)
        return event_dict

    return processor


def setup_logging(level: Optional[str] = None) -> None:
    """Route structlog through stdlib logging with one stdout handler.

    Console rendering in development or when LOG_FORMAT is "text",
    JSON lines otherwise.

    Args:
        level: Overrides LOG_LEVEL from settings
    """
    settings = get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        _add_app_name(settings.APP_NAME),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    # Code blocks run under asyncio; its debug chatter is noise here
    logging.getLogger("asyncio").setLevel(logging.WARNING)


@contextmanager
def branch_log_context(branch_hash: Optional[str]) -> Iterator[None]:
    """Bind the running branch's hash to every log event inside the block."""
    with structlog.contextvars.bound_contextvars(branch=branch_hash):
        yield
