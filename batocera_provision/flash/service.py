"""Flash stage.

Writing the image is the only irreversible step of a run, so it is gated by
an explicit decision function. Declining is not an error: the stage is
skipped and the workflow carries on, which lets a user rerun repair and
sync against a card that is already flashed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from batocera_provision.devices.backend import DiskBackend
from batocera_provision.errors import CommandError, FlashError
from batocera_provision.flash.writer import WriteError, WriteResult, write_image_to_device
from batocera_provision.types import (
    FlashStatus,
    TargetDevice,
    VerificationMode,
    VerificationResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlashPlan:
    """What the flash stage is about to do, shown to the decision function.

    Attributes:
        image_path: Path to the raw image.
        image_size: Size of the image in bytes.
        target: Device that will be overwritten.
        verification_mode: How the write will be verified.
    """

    image_path: Path
    image_size: int
    target: TargetDevice
    verification_mode: VerificationMode


@dataclass
class FlashOutcome:
    """Result of the flash stage.

    Attributes:
        status: FLASHED or SKIPPED (declined by the user).
        plan: The plan that was confirmed or declined.
        bytes_written: Bytes written (0 when skipped).
        verification_result: Result of the read-back check.
    """

    status: FlashStatus
    plan: FlashPlan
    bytes_written: int = 0
    verification_result: VerificationResult = VerificationResult.SKIPPED

    @property
    def skipped(self) -> bool:
        return self.status is FlashStatus.SKIPPED


# Decision function: True to write, False to skip
ConfirmFlash = Callable[[FlashPlan], bool]

# (image_path, device_identifier, verification_mode) -> WriteResult
ImageWriter = Callable[..., WriteResult]


def plan_flash(
    image_path: str | Path,
    target: TargetDevice,
    verification_mode: VerificationMode = VerificationMode.PREFIX_64M,
) -> FlashPlan:
    """Describe a flash without performing it.

    Raises:
        FlashError: The staged image does not exist.
    """
    image_path = Path(image_path)
    if not image_path.is_file():
        raise FlashError(f"Staged image not found: {image_path}", code="image_not_found")
    return FlashPlan(
        image_path=image_path,
        image_size=image_path.stat().st_size,
        target=target,
        verification_mode=verification_mode,
    )


def flash_image(
    image_path: str | Path,
    target: TargetDevice,
    confirm: ConfirmFlash,
    *,
    backend: DiskBackend | None = None,
    writer: ImageWriter = write_image_to_device,
    verification_mode: VerificationMode = VerificationMode.PREFIX_64M,
) -> FlashOutcome:
    """Write the image to the target after explicit confirmation.

    Args:
        image_path: Raw image to write.
        target: Resolved target device.
        confirm: Decision function; the write happens only if it returns True.
        backend: Disk backend used to release the device's volumes first.
        writer: Raw write collaborator.
        verification_mode: Read-back verification mode.

    Returns:
        FlashOutcome, SKIPPED when declined.

    Raises:
        FlashError: The device could not be released or the write failed.
            No retry; the device is in an undefined state.
    """
    plan = plan_flash(image_path, target, verification_mode)

    if not confirm(plan):
        logger.warning(
            "Flash declined: %s was not written. Later stages will run against "
            "whatever card is currently at %s.",
            plan.image_path.name,
            target.identifier,
        )
        return FlashOutcome(status=FlashStatus.SKIPPED, plan=plan)

    logger.info("Flash confirmed for disk %d (%s)", target.index, target.identifier)

    if backend is not None:
        try:
            backend.release_device(target)
        except CommandError as e:
            raise FlashError(
                f"Could not release disk {target.index} for writing: {e.message}",
                code="release_failed",
            ) from e

    try:
        result = writer(
            plan.image_path,
            target.identifier,
            verification_mode=verification_mode,
        )
    except WriteError as e:
        logger.error("Flash failed: %s", e.message)
        raise FlashError(
            f"Writing to disk {target.index} failed: {e.message}. "
            "The card is in an undefined state; flash it again before use.",
            code=e.error_code.lower(),
        ) from e
    except OSError as e:
        raise FlashError(
            f"Writing to disk {target.index} failed: {e}. "
            "The card is in an undefined state; flash it again before use.",
        ) from e

    logger.info(
        "Flash succeeded: %d bytes written to %s, verification=%s",
        result.bytes_written,
        target.identifier,
        result.verification_result.value,
    )
    return FlashOutcome(
        status=FlashStatus.FLASHED,
        plan=plan,
        bytes_written=result.bytes_written,
        verification_result=result.verification_result,
    )


__all__ = [
    "ConfirmFlash",
    "FlashOutcome",
    "FlashPlan",
    "ImageWriter",
    "flash_image",
    "plan_flash",
]
