class PhpSwitchError(Exception):
    """Base class for errors raised by phpswitch."""


class InvalidVersionError(PhpSwitchError):
    """A version string could not be parsed or failed validation."""


class ConfigError(PhpSwitchError):
    """A configuration key or value was rejected."""
