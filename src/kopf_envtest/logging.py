"""Configure logging for the Kopf manager.

The harness itself logs through structlog, configured by
`safir.logging.configure_logging`. Kopf logs through the standard library
``kopf`` logger hierarchy, so route those messages through a structlog
formatter as well to get consistent output from both halves of a test run.
"""

from __future__ import annotations

import logging
import logging.config

import structlog
from safir.logging import LogLevel, Profile, add_log_severity

__all__ = ["configure_kopf_logging"]


def configure_kopf_logging(
    log_level: LogLevel = LogLevel.INFO,
    profile: Profile = Profile.development,
) -> None:
    """Set up logging for the Kopf manager.

    This configures the ``kopf`` logger hierarchy to use structlog for output
    formatting. It replaces the handlers that ``kopf.configure`` would install
    when Kopf is run from its own command line, since the manager is embedded
    and Kopf never configures logging itself in that case.

    Parameters
    ----------
    log_level
        Log level for Kopf logging. Default is ``INFO``.
    profile
        Logging profile. ``production`` renders JSON, ``development`` renders
        human-readable console output.
    """
    if profile == Profile.production:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()
    processors = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        renderer,
    ]
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processors": processors,
                    "foreign_pre_chain": [
                        structlog.stdlib.add_logger_name,
                        add_log_severity,
                    ],
                },
            },
            "handlers": {
                "kopf": {
                    "level": log_level.value,
                    "class": "logging.StreamHandler",
                    "formatter": "structlog",
                },
            },
            "loggers": {
                "kopf": {
                    "handlers": ["kopf"],
                    "level": log_level.value,
                    "propagate": False,
                },
            },
        }
    )
