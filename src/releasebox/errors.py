"""Domain errors for releasebox."""

from typing import Optional


class ReleaseboxError(RuntimeError):
    """Raised when provisioning or a release cannot continue safely."""


class ProvisioningFailure(ReleaseboxError):
    """An install step failed; the environment is not usable."""


class DriverLaunchFailure(ReleaseboxError):
    """The release entry point is missing or could not be executed."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class DriverRuntimeFailure(ReleaseboxError):
    """The release driver ran and exited non-zero."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code
