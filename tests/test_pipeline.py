"""Tests for the provisioning workflow.

Every collaborator is replaced: the in-memory disk backend, a mock raw
writer, scripted decision and barrier callables. Extraction and copying
run for real against tmp_path.
"""

import gzip
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from batocera_provision.errors import (
    AcquisitionError,
    DeviceNotFoundError,
    ExtractionError,
    FlashError,
    InputValidationError,
)
from batocera_provision.flash.writer import WriteIOError, WriteResult
from batocera_provision.image.extract import extract_image
from batocera_provision.image.fetch import DownloadError
from batocera_provision.pipeline import ProvisionRequest, Provisioner, validate_request
from batocera_provision.sync.service import copy_tree
from batocera_provision.types import (
    FlashStatus,
    RepairStatus,
    Stage,
    StageStatus,
    VerificationMode,
    VerificationResult,
)

RAW_IMAGE = b"BATOCERA" * 512
URL = "https://updates.batocera.org/x86_64/stable/last/batocera-x86_64-39.img.gz"


class Recorder:
    """Collects workflow events in order and plays the interactive parts."""

    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.events: list[str] = []
        self.plans: list = []
        self.writer = MagicMock(side_effect=self._write)
        self.copier = MagicMock(side_effect=self._copy)

    def confirm(self, plan) -> bool:
        self.events.append("confirm")
        self.plans.append(plan)
        return self.accept

    def wait_for_reinsert(self, target) -> None:
        self.events.append("reinsert")

    def _write(self, image_path, identifier, verification_mode):
        self.events.append("write")
        return WriteResult(
            bytes_written=len(RAW_IMAGE),
            verification_mode=verification_mode,
            verification_result=VerificationResult.MATCH,
        )

    def _copy(self, source: Path, destination: Path) -> None:
        self.events.append("copy")
        copy_tree(source, destination)


@pytest.fixture
def local_archive(tmp_path: Path) -> Path:
    archive = tmp_path / "downloads" / "batocera-x86_64-39.img.gz"
    archive.parent.mkdir()
    archive.write_bytes(gzip.compress(RAW_IMAGE))
    return archive


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    return tmp_path / "temp"


def _provisioner(backend, recorder: Recorder, **kwargs) -> Provisioner:
    backend.calls.clear()
    return Provisioner(
        backend,
        confirm=recorder.confirm,
        wait_for_reinsert=recorder.wait_for_reinsert,
        writer=recorder.writer,
        copier=recorder.copier,
        **kwargs,
    )


class TestValidateRequest:
    """Input validation runs before anything is touched."""

    @pytest.mark.parametrize("index", [0, 100, -3])
    def test_index_out_of_range(self, fake_backend, work_dir, index):
        request = ProvisionRequest(disk_index=index, work_dir=work_dir, image_url=URL)
        with pytest.raises(InputValidationError):
            validate_request(request, fake_backend)

    def test_neither_source(self, fake_backend, work_dir):
        with pytest.raises(InputValidationError, match="An image is required"):
            validate_request(ProvisionRequest(disk_index=2, work_dir=work_dir), fake_backend)

    def test_both_sources(self, fake_backend, work_dir, local_archive):
        request = ProvisionRequest(
            disk_index=2, work_dir=work_dir, image_path=local_archive, image_url=URL
        )
        with pytest.raises(InputValidationError, match="not both"):
            validate_request(request, fake_backend)

    def test_checksum_format(self, fake_backend, work_dir):
        request = ProvisionRequest(
            disk_index=2, work_dir=work_dir, image_url=URL, expected_checksum="abc"
        )
        with pytest.raises(InputValidationError, match="SHA-256"):
            validate_request(request, fake_backend)

    def test_checksum_needs_url(self, fake_backend, work_dir, local_archive):
        request = ProvisionRequest(
            disk_index=2,
            work_dir=work_dir,
            image_path=local_archive,
            expected_checksum="a" * 64,
        )
        with pytest.raises(InputValidationError, match="image URL"):
            validate_request(request, fake_backend)

    def test_missing_rom_folder(self, fake_backend, work_dir, tmp_path):
        request = ProvisionRequest(
            disk_index=2, work_dir=work_dir, image_url=URL, rom_path=tmp_path / "nope"
        )
        with pytest.raises(InputValidationError, match="ROM folder"):
            validate_request(request, fake_backend)

    def test_missing_second_card(self, fake_backend, work_dir, tmp_path):
        request = ProvisionRequest(
            disk_index=2, work_dir=work_dir, image_url=URL, second_card=tmp_path / "nope"
        )
        with pytest.raises(InputValidationError, match="Second card"):
            validate_request(request, fake_backend)

    def test_rom_folder_inside_cleared_work_dir(self, fake_backend, work_dir):
        roms = work_dir / "roms"
        roms.mkdir(parents=True)
        request = ProvisionRequest(
            disk_index=2, work_dir=work_dir, image_url=URL, rom_path=roms
        )
        with pytest.raises(InputValidationError, match="ROM folder"):
            validate_request(request, fake_backend)

    def test_normalises(self, fake_backend, work_dir, tmp_path):
        request = ProvisionRequest(
            disk_index=2,
            work_dir=work_dir,
            image_url=URL,
            bios_path=None,
            rom_path=tmp_path,
            mount_designator="s:",
            expected_checksum=" " + "A" * 64 + " ",
        )

        normalised = validate_request(request, fake_backend)

        assert normalised.image_path is None
        assert normalised.bios_path is None
        assert normalised.rom_path == tmp_path
        assert normalised.mount_designator == "S"
        assert normalised.expected_checksum == "A" * 64


class TestRunRejectsBadInput:
    """Rejected runs never reach a destructive call."""

    @pytest.mark.parametrize("index", [0, 100])
    def test_out_of_range_index(self, fake_backend, work_dir, local_archive, index):
        recorder = Recorder()
        provisioner = _provisioner(fake_backend, recorder)

        with pytest.raises(InputValidationError) as exc_info:
            provisioner.run(
                ProvisionRequest(disk_index=index, work_dir=work_dir, image_path=local_archive)
            )

        assert exc_info.value.stage is Stage.VALIDATE
        assert fake_backend.calls == []
        assert recorder.events == []
        assert not work_dir.exists()

    def test_neither_source_touches_nothing(self, fake_backend, work_dir):
        recorder = Recorder()
        downloader = MagicMock()
        provisioner = _provisioner(fake_backend, recorder, downloader=downloader)

        with pytest.raises(InputValidationError):
            provisioner.run(ProvisionRequest(disk_index=2, work_dir=work_dir))

        downloader.assert_not_called()
        assert recorder.events == []
        assert not work_dir.exists()

    def test_image_inside_cleared_work_dir_survives(self, fake_backend, work_dir):
        """An archive left in the work directory by an earlier run is not wiped."""
        archive = work_dir / "batocera-39.img.gz"
        work_dir.mkdir()
        archive.write_bytes(gzip.compress(RAW_IMAGE))
        recorder = Recorder()
        provisioner = _provisioner(fake_backend, recorder)

        with pytest.raises(InputValidationError, match="inside the work directory"):
            provisioner.run(
                ProvisionRequest(
                    disk_index=2, work_dir=work_dir, image_path=archive, clear_work_dir=True
                )
            )

        assert archive.exists()
        assert fake_backend.calls == []
        assert recorder.events == []

    def test_image_inside_work_dir_allowed_without_clear(
        self, fake_backend, work_dir
    ):
        archive = work_dir / "batocera-39.img.gz"
        work_dir.mkdir()
        archive.write_bytes(gzip.compress(RAW_IMAGE))
        recorder = Recorder()

        report = _provisioner(fake_backend, recorder).run(
            ProvisionRequest(
                disk_index=2, work_dir=work_dir, image_path=archive, clear_work_dir=False
            )
        )

        assert report.status_of(Stage.EXTRACT) is StageStatus.COMPLETED
        assert archive.exists()


class TestLocalImageScenario:
    """Local image, disk 2, clear=True, no personal files, no second card."""

    def test_end_to_end(self, fake_backend, sd_card, work_dir, local_archive):
        work_dir.mkdir()
        (work_dir / "stale.img").write_bytes(b"old")
        recorder = Recorder(accept=True)
        provisioner = _provisioner(fake_backend, recorder)

        report = provisioner.run(
            ProvisionRequest(
                disk_index=2,
                work_dir=work_dir,
                image_path=local_archive,
                clear_work_dir=True,
            )
        )

        # Workspace cleared, image staged under <temp>/Batocera
        assert not (work_dir / "stale.img").exists()
        staged = work_dir / "Batocera" / "batocera-x86_64-39.img"
        assert staged.read_bytes() == RAW_IMAGE
        assert report.artifact.image_path == staged

        # Confirmation names disk 2, then exactly one write to its identifier
        assert recorder.plans[0].target.index == 2
        recorder.writer.assert_called_once_with(
            staged, sd_card.identifier, verification_mode=VerificationMode.PREFIX_64M
        )
        assert report.flash.status is FlashStatus.FLASHED

        # Barrier between flash and repair; repair on disk 2's last partition
        assert recorder.events == ["confirm", "write", "reinsert"]
        names = fake_backend.call_names()
        assert names.index("release_device") < names.index("list_partitions")
        assert ("list_partitions", 2) in fake_backend.calls
        assert report.repair.partition.partition_number == 2
        assert report.repair.status is RepairStatus.REPAIRED

        # No copies
        recorder.copier.assert_not_called()
        assert report.sync.operation_count == 0
        assert report.success

        assert [r.stage for r in report.stages] == list(Stage)
        assert report.status_of(Stage.SYNC) is StageStatus.SKIPPED

    def test_stage_observer_sees_every_stage(self, fake_backend, work_dir, local_archive):
        seen = []
        provisioner = _provisioner(fake_backend, Recorder(), on_stage=seen.append)

        provisioner.run(
            ProvisionRequest(disk_index=2, work_dir=work_dir, image_path=local_archive)
        )

        assert [r.stage for r in seen] == list(Stage)


class TestRemoteImageScenario:
    """Remote URL, populated ROM folder, no BIOS folder."""

    def test_end_to_end(self, fake_backend, work_dir, tmp_path):
        roms = tmp_path / "my-roms"
        (roms / "snes").mkdir(parents=True)
        (roms / "snes" / "mario.sfc").write_bytes(b"rom")

        def download(url, dest_dir, checksum):
            path = dest_dir / "batocera-x86_64-39.img.gz"
            path.write_bytes(gzip.compress(RAW_IMAGE))
            return path

        downloader = MagicMock(side_effect=download)
        extractor = MagicMock(side_effect=extract_image)
        recorder = Recorder(accept=True)
        provisioner = _provisioner(
            fake_backend, recorder, downloader=downloader, extractor=extractor
        )

        report = provisioner.run(
            ProvisionRequest(disk_index=2, work_dir=work_dir, image_url=URL, rom_path=roms)
        )

        downloader.assert_called_once_with(URL, work_dir, None)
        extractor.assert_called_once_with(
            work_dir / "batocera-x86_64-39.img.gz", work_dir / "Batocera"
        )

        share = fake_backend.volume_base / "R"
        assert (share / "roms" / "snes" / "mario.sfc").read_bytes() == b"rom"
        assert not (share / "bios").exists()
        recorder.copier.assert_called_once_with(roms, share / "roms")
        assert recorder.events.index("reinsert") < recorder.events.index("copy")
        assert report.success
        assert report.status_of(Stage.SYNC) is StageStatus.COMPLETED


class TestDeclinedFlash:
    """Declining the write is not an error."""

    def test_declined_still_runs_later_stages(self, fake_backend, work_dir, local_archive):
        recorder = Recorder(accept=False)
        provisioner = _provisioner(fake_backend, recorder)

        report = provisioner.run(
            ProvisionRequest(disk_index=2, work_dir=work_dir, image_path=local_archive)
        )

        recorder.writer.assert_not_called()
        assert "release_device" not in fake_backend.call_names()
        assert recorder.events == ["confirm", "reinsert"]
        assert report.flash.status is FlashStatus.SKIPPED
        assert report.status_of(Stage.FLASH) is StageStatus.SKIPPED
        assert report.repair is not None
        assert report.sync is not None
        assert report.success

    def test_declined_record_names_identifier(
        self, fake_backend, sd_card, work_dir, local_archive
    ):
        provisioner = _provisioner(fake_backend, Recorder(accept=False))

        report = provisioner.run(
            ProvisionRequest(disk_index=2, work_dir=work_dir, image_path=local_archive)
        )

        flash_record = next(r for r in report.stages if r.stage is Stage.FLASH)
        assert sd_card.identifier in flash_record.message


class TestFatalStages:
    """Fatal errors carry their stage and stop the run."""

    def test_unknown_disk(self, fake_backend, work_dir, local_archive):
        recorder = Recorder()
        provisioner = _provisioner(fake_backend, recorder)

        with pytest.raises(DeviceNotFoundError) as exc_info:
            provisioner.run(
                ProvisionRequest(disk_index=7, work_dir=work_dir, image_path=local_archive)
            )

        assert exc_info.value.stage is Stage.RESOLVE
        assert recorder.events == []
        assert not work_dir.exists()

    def test_download_failure(self, fake_backend, work_dir):
        recorder = Recorder()
        downloader = MagicMock(side_effect=DownloadError("HTTP error 404", code="http_error"))
        provisioner = _provisioner(fake_backend, recorder, downloader=downloader)

        with pytest.raises(AcquisitionError) as exc_info:
            provisioner.run(ProvisionRequest(disk_index=2, work_dir=work_dir, image_url=URL))

        assert exc_info.value.stage is Stage.ACQUIRE
        assert recorder.events == []

    def test_missing_local_image_fails_at_extraction(self, fake_backend, work_dir, tmp_path):
        recorder = Recorder()
        provisioner = _provisioner(fake_backend, recorder)

        with pytest.raises(ExtractionError) as exc_info:
            provisioner.run(
                ProvisionRequest(
                    disk_index=2, work_dir=work_dir, image_path=tmp_path / "missing.img.gz"
                )
            )

        assert exc_info.value.stage is Stage.EXTRACT
        assert recorder.events == []

    def test_write_failure_stops_before_barrier(self, fake_backend, work_dir, local_archive):
        recorder = Recorder()
        recorder.writer.side_effect = WriteIOError("Error writing to device")
        provisioner = _provisioner(fake_backend, recorder)

        with pytest.raises(FlashError) as exc_info:
            provisioner.run(
                ProvisionRequest(disk_index=2, work_dir=work_dir, image_path=local_archive)
            )

        assert exc_info.value.stage is Stage.FLASH
        assert "reinsert" not in recorder.events
        assert "list_partitions" not in fake_backend.call_names()

    def test_failed_stage_is_reported(self, fake_backend, work_dir, local_archive):
        seen = []
        recorder = Recorder()
        recorder.writer.side_effect = WriteIOError("boom")
        provisioner = _provisioner(fake_backend, recorder, on_stage=seen.append)

        with pytest.raises(FlashError):
            provisioner.run(
                ProvisionRequest(disk_index=2, work_dir=work_dir, image_path=local_archive)
            )

        assert seen[-1].stage is Stage.FLASH
        assert seen[-1].status is StageStatus.FAILED


class TestNonFatalStages:
    def test_repair_failure_skips_copies(self, fake_backend, work_dir, local_archive, tmp_path):
        """Without a derived mount path nothing is copied."""
        fake_backend.fail_on.add("assign_mount_point")
        recorder = Recorder()
        provisioner = _provisioner(fake_backend, recorder)

        report = provisioner.run(
            ProvisionRequest(
                disk_index=2, work_dir=work_dir, image_path=local_archive, rom_path=tmp_path
            )
        )

        assert report.repair.status is RepairStatus.FAILED
        assert report.status_of(Stage.REPAIR) is StageStatus.FAILED
        recorder.copier.assert_not_called()
        assert report.status_of(Stage.SYNC) is StageStatus.SKIPPED
        assert report.success

    def test_degraded_repair_still_copies(self, fake_backend, work_dir, local_archive, tmp_path):
        fake_backend.fail_on.add("set_label")
        roms = tmp_path / "roms"
        roms.mkdir()
        recorder = Recorder()
        provisioner = _provisioner(fake_backend, recorder)

        report = provisioner.run(
            ProvisionRequest(disk_index=2, work_dir=work_dir, image_path=local_archive, rom_path=roms)
        )

        assert report.status_of(Stage.REPAIR) is StageStatus.DEGRADED
        recorder.copier.assert_called_once()

    def test_copy_failure_marks_report(self, fake_backend, work_dir, local_archive, tmp_path):
        roms = tmp_path / "roms"
        roms.mkdir()
        recorder = Recorder()
        recorder.copier.side_effect = OSError("card full")
        provisioner = _provisioner(fake_backend, recorder)

        report = provisioner.run(
            ProvisionRequest(disk_index=2, work_dir=work_dir, image_path=local_archive, rom_path=roms)
        )

        assert not report.success
        assert report.status_of(Stage.SYNC) is StageStatus.FAILED
        data = report.to_dict()
        assert data["success"] is False
        assert "card full" in data["copy_failures"][0]
