import logging
import logging.config

from netlease.config.config import config
from netlease.models.models import LogLevel

logging.config.dictConfig(config.get("logging"))
SERVICE_LOG_LEVELS: dict[str, str] = config.get("log_levels")


class MainLogger:
    """Aplication wide logging, one named logger per service."""

    @classmethod
    def get_logger(
        cls, service_name: str = "MAIN", log_level: str | None = None
    ) -> logging.Logger:
        """Logging instance getter, configurable by service name and level.

        A level configured under `log_levels` for the service wins over the
        one passed in.

        Args:
            service_name(str): Logger instance
            log_level(str): Fallback level for your instance
        Returns:
            logging.Logger: Configured logger instance.
        """
        level = SERVICE_LOG_LEVELS.get(service_name, log_level or "INFO")
        logger = logging.getLogger(service_name)
        logger.setLevel(LogLevel(level).value)
        return logger
