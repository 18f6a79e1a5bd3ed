"""Error kinds shared by the morphometry tools and the exit statuses they map to."""

EXIT_OK = 0
EXIT_CONFIGURATION_ERROR = 1
EXIT_UNEXPECTED_ERROR = 2
EXIT_IO_ERROR = 3


class MorphometryError(Exception):
    """Base class for all errors raised by the morphometry package."""


class ConfigurationError(MorphometryError, ValueError):
    """Invalid inputs or parameters: geometry mismatch, bad phase, radius or bin count."""


class VolumeIOError(MorphometryError, OSError):
    """A volume or table could not be read from or written to disk."""
