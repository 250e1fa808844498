"""
Error taxonomy for the relay and the backup synchronizer.

None of these are allowed to escape to the event loop: the router turns them
into error events for the originating connection and the synchronizer logs
them and retries on its next tick.

A routing miss (target user offline) is deliberately not an exception; see
RelayRouter for how it is logged and counted.
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class InvalidPayload(RelayError):
    """An inbound event is missing required fields."""


class StoreError(RelayError):
    """The local durable store rejected a write or could not be read."""


class BackupPushError(RelayError):
    """The remote backup store was unreachable or rejected an upsert."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BackupRestoreError(RelayError):
    """Reading the remote backup store failed during restore."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
