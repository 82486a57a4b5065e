"""
nullanchor - Structured Logging

Events are snake_case names with key/value context. Digests, ids and
codes may be logged; subject handles and anchor hints never are.

SPDX-License-Identifier: AGPL-3.0-or-later
"""

import logging
import sys
from typing import Optional

import structlog

from .config import LogFormat, RelayerSettings, get_settings


def setup_logging(settings: Optional[RelayerSettings] = None) -> None:
    """Configure structlog once for the process."""
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.value)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if settings.log_format == LogFormat.JSON
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
