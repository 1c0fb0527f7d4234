"""Central logging configuration.

Installs a single stdout handler on the root logger so module loggers emit
without per-module setup, and routes the uvicorn loggers through it.
"""

import logging
from logging.config import dictConfig


def _dict_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s:%(name)s:%(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": {
            "uvicorn": {"level": level, "handlers": ["console"], "propagate": False},
            "uvicorn.error": {"level": level, "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": level, "handlers": ["console"], "propagate": False},
            # discovery cache warnings are noise for service accounts
            "googleapiclient.discovery_cache": {"level": "ERROR"},
        },
    }


def configure_logging(level: str = "INFO") -> None:
    """Configure application-wide logging once.

    Returns early when the root logger already has handlers, which happens
    under reloaders and test runners.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    dictConfig(_dict_config(level.upper()))
