"""Exception hierarchy for configuration and worker fleet failures."""


class CrowdError(Exception):
    """Base error type for all crowd command failures."""


class ConfigNotFound(CrowdError):
    """Configuration bundle is missing or unreadable."""

    def __init__(self, message: str = "", *, directory: str = ""):
        super().__init__(
            message
            or "`crowd` can't find the CloudCrowd configuration directory. Please either run "
            "`crowd` from inside of the configuration directory, or add a CLOUD_CROWD_CONFIG "
            "variable to your environment."
        )
        self.directory = directory


class RecordConflict(CrowdError):
    """A live worker record already occupies the slot."""

    def __init__(self, slot: int, pid: int):
        super().__init__(f"worker {slot} already running (PID: {pid})")
        self.slot = slot
        self.pid = pid


class SpawnFailure(CrowdError):
    """Worker process for a slot could not be created."""

    def __init__(self, slot: int | None, reason: str):
        label = "(foreground)" if slot is None else slot
        super().__init__(f"failed to spawn worker {label}: {reason}")
        self.slot = slot
        self.reason = reason


class SignalFailure(CrowdError):
    """Worker process disappeared before it could be signalled."""

    def __init__(self, slot: int, pid: int):
        super().__init__(f"worker {slot} (PID: {pid}) is no longer running")
        self.slot = slot
        self.pid = pid
