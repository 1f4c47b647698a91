"""Exception types raised by the sync engine."""


class SalesSyncError(Exception):
    """Base class for sync engine errors."""


class ConfigError(SalesSyncError):
    """Required configuration is missing or invalid."""


class CheckpointError(SalesSyncError):
    """A stored checkpoint or aggregate map could not be decoded."""


class LockError(SalesSyncError):
    """The job lock table could not be read or written."""


class SinkError(SalesSyncError):
    """The output store rejected a write."""
