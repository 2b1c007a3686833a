"""Tests for flash/service.py - confirmation gate and error mapping."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from batocera_provision.errors import CommandError, FlashError
from batocera_provision.flash.service import FlashPlan, flash_image, plan_flash
from batocera_provision.flash.writer import HashMismatchError, WriteResult
from batocera_provision.types import (
    FlashStatus,
    Stage,
    VerificationMode,
    VerificationResult,
)


@pytest.fixture
def image(tmp_path: Path) -> Path:
    path = tmp_path / "batocera.img"
    path.write_bytes(b"\x00" * 4096)
    return path


def _ok_writer() -> MagicMock:
    return MagicMock(
        return_value=WriteResult(
            bytes_written=4096,
            verification_mode=VerificationMode.FULL,
            verification_result=VerificationResult.MATCH,
        )
    )


class TestPlanFlash:
    """Tests for plan_flash function."""

    def test_plan_basic(self, image, sd_card):
        plan = plan_flash(image, sd_card, VerificationMode.FULL)

        assert isinstance(plan, FlashPlan)
        assert plan.image_path == image
        assert plan.image_size == 4096
        assert plan.target is sd_card
        assert plan.verification_mode is VerificationMode.FULL

    def test_missing_image(self, tmp_path, sd_card):
        with pytest.raises(FlashError) as exc_info:
            plan_flash(tmp_path / "missing.img", sd_card)
        assert exc_info.value.code == "image_not_found"


class TestFlashImage:
    """Tests for flash_image function."""

    def test_declined_skips_write(self, image, sd_card, fake_backend):
        """Declining performs no write and no device release."""
        writer = _ok_writer()
        confirm = MagicMock(return_value=False)

        outcome = flash_image(image, sd_card, confirm, backend=fake_backend, writer=writer)

        assert outcome.status is FlashStatus.SKIPPED
        assert outcome.skipped
        assert outcome.bytes_written == 0
        writer.assert_not_called()
        assert "release_device" not in fake_backend.call_names()
        confirm.assert_called_once()
        assert confirm.call_args.args[0].target is sd_card

    def test_declined_logs_warning(self, image, sd_card, caplog):
        with caplog.at_level("WARNING", logger="batocera_provision"):
            flash_image(image, sd_card, lambda plan: False, writer=_ok_writer())

        assert sd_card.identifier in caplog.text

    def test_confirmed_writes_once(self, image, sd_card, fake_backend):
        writer = _ok_writer()

        outcome = flash_image(
            image,
            sd_card,
            lambda plan: True,
            backend=fake_backend,
            writer=writer,
            verification_mode=VerificationMode.FULL,
        )

        assert outcome.status is FlashStatus.FLASHED
        assert outcome.bytes_written == 4096
        assert outcome.verification_result is VerificationResult.MATCH
        writer.assert_called_once_with(
            image, sd_card.identifier, verification_mode=VerificationMode.FULL
        )
        assert fake_backend.call_names() == ["release_device"]

    def test_writer_failure_is_fatal(self, image, sd_card):
        """No retry; the error warns about the undefined device state."""
        writer = MagicMock(
            side_effect=HashMismatchError(sd_card.identifier, 4096, "b" * 64)
        )

        with pytest.raises(FlashError) as exc_info:
            flash_image(image, sd_card, lambda plan: True, writer=writer)

        writer.assert_called_once()
        assert exc_info.value.stage is Stage.FLASH
        assert exc_info.value.code == "hash_mismatch"
        assert "undefined state" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, HashMismatchError)

    def test_os_error_is_fatal(self, image, sd_card):
        writer = MagicMock(side_effect=OSError("device vanished"))

        with pytest.raises(FlashError, match="device vanished"):
            flash_image(image, sd_card, lambda plan: True, writer=writer)

    def test_release_failure(self, image, sd_card):
        backend = MagicMock()
        backend.release_device.side_effect = CommandError("Access denied", command=["x"])
        writer = _ok_writer()

        with pytest.raises(FlashError) as exc_info:
            flash_image(image, sd_card, lambda plan: True, backend=backend, writer=writer)

        assert exc_info.value.code == "release_failed"
        writer.assert_not_called()
