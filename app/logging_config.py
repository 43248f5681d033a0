from logging.config import dictConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send the ``app.*`` loggers to stderr at ``level``.

    Only the ``app`` logger tree is touched, so uvicorn keeps its own setup.
    Calling it again swaps the handler instead of adding a second one.
    """
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "default"}},
            "loggers": {
                "app": {"level": level.upper(), "handlers": ["console"], "propagate": False},
            },
        }
    )
