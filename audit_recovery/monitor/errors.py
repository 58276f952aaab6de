"""Exception taxonomy for the recovery monitor."""


class RecoveryError(Exception):
    """Base class for all monitor errors."""


class ObservationFailure(RecoveryError):
    """Gathering metrics or running health checks failed."""


class RemediationActionFailure(RecoveryError):
    """A single remediation action reported failure."""

    def __init__(self, action: str, message: str) -> None:
        super().__init__(f"{action}: {message}")
        self.action = action


class RestoreFailure(RecoveryError):
    """Backup restoration failed or the restored database is still unhealthy.

    Fatal: requires manual intervention and is never retried automatically.
    """
