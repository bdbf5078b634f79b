import logging.config
import sys

from creatorpay.settings import LOG_FORMAT, LOG_LEVEL

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,

    "formatters": {
        "json": {
            "()": "pythonjsonlogger.json.JsonFormatter",
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
            "json_ensure_ascii": False,
        },
        "console": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },

    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "stream": sys.stdout,
        },
    },

    "loggers": {
        "creatorpay": {
            "level": "INFO",
        },
    },

    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
}


def configure_logging(level=None, fmt=None):
    """Install the service's logging setup.

    Every log call in the package uses an event name as the message and puts
    identifiers in ``extra``, so the JSON formatter emits them as fields.
    """
    config = {
        **LOGGING_CONFIG,
        "handlers": {
            "console": {**LOGGING_CONFIG["handlers"]["console"], "formatter": fmt or LOG_FORMAT},
        },
        "loggers": {
            "creatorpay": {**LOGGING_CONFIG["loggers"]["creatorpay"], "level": level or LOG_LEVEL},
        },
    }
    logging.config.dictConfig(config)
