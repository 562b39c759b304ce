class DHCPError(Exception):
    """Base class for DHCP errors"""


class ConfigError(DHCPError):
    """Invalid configuration, fatal at start."""


class RangeError(DHCPError):
    """Address outside of the configured pool."""


class ConflictError(DHCPError):
    """Reservation collides with an existing lease or entry."""
