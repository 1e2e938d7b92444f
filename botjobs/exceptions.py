"""
Exception hierarchy for the bot job engine.

Two tiers are kept apart: ActionFailed describes a single job's failure and
never leaves the executor, while StorageError aborts a whole run.
"""


class BotJobsError(Exception):
    """Base class for all engine errors."""


class StorageError(BotJobsError):
    """The job store could not be read or written."""


class ConfigError(BotJobsError):
    """A configuration value or registry spec is invalid."""


class ActionFailed(BotJobsError):
    """
    Raised by an action handler to fail its job with a reason.

    Args:
        reason: Human readable failure reason, stored on the job
    """

    def __init__(self, reason: str):
        reason = str(reason)
        super().__init__(reason)
        self.reason = reason


class StaleJobError(ActionFailed):
    """The session moved on before the job ran; the action no longer applies."""

    def __init__(self, reason: str):
        super().__init__(f"stale: {reason}")


class ActionTimeout(BotJobsError):
    """An action ran past its job_timeout budget."""
