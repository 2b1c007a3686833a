"""Error taxonomy for the provisioning workflow.

Every error carries a stable code for programmatic handling and the stage
it was raised in, so the CLI can always say which stage failed and why.
PartitionRepairError is the only kind the workflow recovers from locally;
all others abort the run.
"""

from batocera_provision.types import Stage

# Error code constants
VALIDATION_ERROR = "validation"
DEVICE_NOT_FOUND = "device_not_found"
WORKSPACE_ERROR = "workspace_error"
ACQUISITION_ERROR = "acquisition_error"
EXTRACTION_ERROR = "extraction_error"
FLASH_ERROR = "flash_error"
PARTITION_REPAIR_ERROR = "partition_repair_error"
COPY_ERROR = "copy_error"
COMMAND_ERROR = "command_error"


class ProvisionError(Exception):
    """Base exception for provisioning errors."""

    default_code = "provision_error"
    default_stage: Stage | None = None

    def __init__(
        self,
        message: str,
        code: str | None = None,
        stage: Stage | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.stage = stage or self.default_stage

    def describe(self) -> str:
        """Return a one-line description naming the failed stage and cause."""
        stage = self.stage.value if self.stage else "unknown"
        cause = self.__cause__
        if cause is not None and str(cause) not in self.message:
            return f"[{stage}] {self.message} (cause: {cause})"
        return f"[{stage}] {self.message}"


class InputValidationError(ProvisionError):
    """Invocation parameters are invalid; nothing has been touched yet."""

    default_code = VALIDATION_ERROR
    default_stage = Stage.VALIDATE


class DeviceNotFoundError(ProvisionError):
    """No host disk matches the requested index."""

    default_code = DEVICE_NOT_FOUND
    default_stage = Stage.RESOLVE

    def __init__(self, index: int, message: str | None = None) -> None:
        super().__init__(message or f"No disk found with number {index}")
        self.index = index


class WorkspaceError(ProvisionError):
    """The scratch directory cannot be cleared or created."""

    default_code = WORKSPACE_ERROR
    default_stage = Stage.WORKSPACE


class AcquisitionError(ProvisionError):
    """The image archive could not be downloaded or located."""

    default_code = ACQUISITION_ERROR
    default_stage = Stage.ACQUIRE


class ExtractionError(ProvisionError):
    """The image archive is corrupt, unreadable or of an unknown format."""

    default_code = EXTRACTION_ERROR
    default_stage = Stage.EXTRACT


class FlashError(ProvisionError):
    """The raw write failed; the device is left in an undefined state."""

    default_code = FLASH_ERROR
    default_stage = Stage.FLASH


class PartitionRepairError(ProvisionError):
    """Inspecting or assigning partition metadata failed. Non-fatal."""

    default_code = PARTITION_REPAIR_ERROR
    default_stage = Stage.REPAIR


class CopyError(ProvisionError):
    """A single copy operation of the sync stage failed."""

    default_code = COPY_ERROR
    default_stage = Stage.SYNC

    def __init__(self, message: str, source: str, destination: str) -> None:
        super().__init__(message)
        self.source = source
        self.destination = destination


class CommandError(ProvisionError):
    """A host disk tool exited with an error."""

    default_code = COMMAND_ERROR

    def __init__(
        self,
        message: str,
        command: list[str],
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


__all__ = [
    "ACQUISITION_ERROR",
    "COMMAND_ERROR",
    "COPY_ERROR",
    "DEVICE_NOT_FOUND",
    "EXTRACTION_ERROR",
    "FLASH_ERROR",
    "PARTITION_REPAIR_ERROR",
    "VALIDATION_ERROR",
    "WORKSPACE_ERROR",
    "AcquisitionError",
    "CommandError",
    "CopyError",
    "DeviceNotFoundError",
    "ExtractionError",
    "FlashError",
    "InputValidationError",
    "PartitionRepairError",
    "ProvisionError",
    "WorkspaceError",
]
