"""Application-level error types."""


class ProcPoolError(Exception):
    """Base error for procpool."""


class ConfigError(ProcPoolError):
    """Raised when scheduler settings are invalid."""


class TaskFileError(ProcPoolError):
    """Raised when task file loading/validation fails."""


class SchedulerError(ProcPoolError):
    """Raised when a scheduler operation is rejected."""


class AlreadyRunningError(SchedulerError):
    """Raised when start() is called while the scheduler is active."""


class SpawnError(ProcPoolError):
    """Raised when a task process cannot be started."""
