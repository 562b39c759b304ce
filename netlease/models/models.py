import logging
from enum import Enum, unique


@unique
class LogLevel(Enum):
    """Levels accepted under `log_levels` and by MainLogger."""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def _missing_(cls, value):
        """Match names case insensitively ("debug", " Warn "), unknown -> INFO."""
        if isinstance(value, str):
            name = value.strip().upper()
            if name == "WARN":
                name = "WARNING"
            if name in cls.__members__:
                return cls[name]
            if name.isdigit():
                return cls._missing_(logging.getLevelName(int(name)))
        return cls.INFO
