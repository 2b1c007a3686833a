"""Provisioning workflow.

Runs the stages strictly in order, each exactly once:

    validate -> resolve -> workspace -> acquire -> extract -> flash
             -> reinsert -> repair -> sync

Data only flows forward: the resolved identifier is the flash target, the
staged image is the flash source and the repaired volume is the copy
destination. Fatal stage errors unwind the run immediately with no
cleanup. Partition repair is the only stage whose failure is absorbed;
its typed result tells the sync stage whether a destination exists.

Both interactive suspension points, the flash confirmation and the
re-insertion barrier, are injected callables so the workflow runs
unchanged under tests.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from batocera_provision.devices.backend import DiskBackend
from batocera_provision.devices.resolver import resolve_device, validate_disk_index
from batocera_provision.errors import CommandError, InputValidationError, ProvisionError
from batocera_provision.flash.service import ConfirmFlash, FlashOutcome, ImageWriter, flash_image
from batocera_provision.flash.writer import write_image_to_device
from batocera_provision.image.acquire import Downloader, acquire_image, validate_image_source
from batocera_provision.image.extract import extract_image
from batocera_provision.partitions.repair import DEFAULT_SHARE_LABEL, RepairResult, repair_partitions
from batocera_provision.partitions.selectors import PartitionSelector, last_partition
from batocera_provision.sync.service import SyncResult, TreeCopier, copy_tree, sync_files
from batocera_provision.types import (
    ImageArtifact,
    ImageSourceKind,
    RepairStatus,
    Stage,
    StageRecord,
    StageStatus,
    TargetDevice,
    UserFileSet,
    VerificationMode,
    Workspace,
)
from batocera_provision.workspace import prepare_workspace

logger = logging.getLogger(__name__)

_SHA256_HEX = re.compile(r"^[0-9a-fA-F]{64}$")

# Blocks until the user confirms the card was ejected and re-inserted
WaitForReinsert = Callable[[TargetDevice], None]

# (archive_path, staging_dir) -> raw image path
Extractor = Callable[[Path, Path], Path]

StageObserver = Callable[[StageRecord], None]


@dataclass
class ProvisionRequest:
    """Parameters of one provisioning run.

    Attributes:
        disk_index: Host disk number of the card (1-99).
        work_dir: Scratch directory root.
        image_path: Local image archive (exclusive with image_url).
        image_url: Remote image URL (exclusive with image_path).
        clear_work_dir: Wipe the scratch directory first.
        bios_path: Personal BIOS tree to copy, if any.
        rom_path: Personal ROM tree to copy, if any.
        mount_designator: Drive letter / mount directory for the data partition.
        second_card: Root of a second mounted card to mirror bios/roms onto.
        expected_checksum: SHA-256 the download must match.
        verification_mode: Read-back verification after the write.
        share_label: Label for an unlabelled data partition.
    """

    disk_index: int
    work_dir: Path
    image_path: Path | None = None
    image_url: str | None = None
    clear_work_dir: bool = True
    bios_path: Path | None = None
    rom_path: Path | None = None
    mount_designator: str | None = None
    second_card: Path | None = None
    expected_checksum: str | None = None
    verification_mode: VerificationMode = VerificationMode.PREFIX_64M
    share_label: str = DEFAULT_SHARE_LABEL

    @property
    def user_files(self) -> UserFileSet:
        return UserFileSet(bios_path=self.bios_path, rom_path=self.rom_path)


@dataclass
class ProvisionReport:
    """Everything a run produced, stage by stage."""

    stages: list[StageRecord] = field(default_factory=list)
    target: TargetDevice | None = None
    workspace: Workspace | None = None
    artifact: ImageArtifact | None = None
    flash: FlashOutcome | None = None
    repair: RepairResult | None = None
    sync: SyncResult | None = None

    @property
    def success(self) -> bool:
        """True when no stage failed fatally and every copy succeeded."""
        failed_fatal = any(
            r.status is StageStatus.FAILED and r.stage is not Stage.REPAIR
            for r in self.stages
        )
        return not failed_fatal and (self.sync is None or self.sync.success)

    def status_of(self, stage: Stage) -> StageStatus | None:
        for record in self.stages:
            if record.stage is stage:
                return record.status
        return None

    def to_dict(self) -> dict[str, Any]:
        """Render the report as JSON-serialisable data."""
        return {
            "success": self.success,
            "target": {
                "index": self.target.index,
                "identifier": self.target.identifier,
                "description": self.target.description,
            }
            if self.target
            else None,
            "image_path": str(self.artifact.image_path)
            if self.artifact and self.artifact.image_path
            else None,
            "flash": self.flash.status.value if self.flash else None,
            "repair": self.repair.status.value if self.repair else None,
            "mount_root": str(self.repair.volume.root_path)
            if self.repair and self.repair.volume
            else None,
            "copied": len(self.sync.copied) if self.sync else 0,
            "copy_failures": [e.message for e in self.sync.failed] if self.sync else [],
            "stages": [
                {"stage": r.stage.value, "status": r.status.value, "message": r.message}
                for r in self.stages
            ],
        }


def _existing_dir(value: Path | None, what: str) -> Path | None:
    if value is None or str(value).strip() == "":
        return None
    path = Path(value).expanduser()
    if not path.is_dir():
        raise InputValidationError(f"{what} does not exist or is not a directory: {path}")
    return path


def _is_within(path: Path, root: Path) -> bool:
    return Path(path).expanduser().resolve().is_relative_to(root.resolve())


def _check_outside_workspace(request: ProvisionRequest, work_dir: Path) -> None:
    # Clearing deletes the whole work directory before anything is read
    inputs = (
        ("Image", request.image_path),
        ("BIOS folder", request.bios_path),
        ("ROM folder", request.rom_path),
        ("Second card", request.second_card),
    )
    for what, value in inputs:
        if value is not None and _is_within(value, work_dir):
            raise InputValidationError(
                f"{what} {value} is inside the work directory {work_dir}, which is "
                "cleared before use; move it or pass --no-clear"
            )


def validate_request(request: ProvisionRequest, backend: DiskBackend) -> ProvisionRequest:
    """Check a request before anything is touched.

    Returns a normalised copy: empty paths become None and the mount
    designator is canonical for the host.

    Raises:
        InputValidationError: Any parameter is invalid.
    """
    validate_disk_index(request.disk_index)
    kind = validate_image_source(request.image_path, request.image_url)

    checksum = (request.expected_checksum or "").strip() or None
    if checksum is not None:
        if kind is not ImageSourceKind.REMOTE:
            raise InputValidationError("A checksum can only be given with an image URL")
        if not _SHA256_HEX.match(checksum):
            raise InputValidationError(f"Not a SHA-256 hex digest: {checksum}")

    designator = request.mount_designator
    if designator is not None and designator.strip():
        designator = backend.normalize_designator(designator)
    else:
        designator = None

    if not request.share_label.strip():
        raise InputValidationError("Partition label must not be empty")

    normalised = ProvisionRequest(
        disk_index=request.disk_index,
        work_dir=Path(request.work_dir).expanduser(),
        image_path=request.image_path if kind is ImageSourceKind.LOCAL else None,
        image_url=request.image_url if kind is ImageSourceKind.REMOTE else None,
        clear_work_dir=request.clear_work_dir,
        bios_path=_existing_dir(request.bios_path, "BIOS folder"),
        rom_path=_existing_dir(request.rom_path, "ROM folder"),
        mount_designator=designator,
        second_card=_existing_dir(request.second_card, "Second card"),
        expected_checksum=checksum,
        verification_mode=request.verification_mode,
        share_label=request.share_label.strip(),
    )
    if normalised.clear_work_dir:
        _check_outside_workspace(normalised, normalised.work_dir)
    return normalised


class Provisioner:
    """Runs the provisioning workflow against one device.

    Collaborators are injected so every stage can be replaced in tests:
    the disk backend, the two interactive callables, and the download,
    extraction, raw write and copy operations.
    """

    def __init__(
        self,
        backend: DiskBackend,
        *,
        confirm: ConfirmFlash,
        wait_for_reinsert: WaitForReinsert,
        downloader: Downloader | None = None,
        extractor: Extractor = extract_image,
        writer: ImageWriter = write_image_to_device,
        copier: TreeCopier = copy_tree,
        selector: PartitionSelector = last_partition,
        on_stage: StageObserver | None = None,
    ) -> None:
        self.backend = backend
        self.confirm = confirm
        self.wait_for_reinsert = wait_for_reinsert
        self.downloader = downloader
        self.extractor = extractor
        self.writer = writer
        self.copier = copier
        self.selector = selector
        self.on_stage = on_stage

    def _record(
        self,
        report: ProvisionReport,
        stage: Stage,
        status: StageStatus,
        message: str = "",
        **details: object,
    ) -> None:
        record = StageRecord(stage=stage, status=status, message=message, details=details)
        report.stages.append(record)
        logger.debug("Stage %s: %s %s", stage.value, status.value, message)
        if self.on_stage is not None:
            self.on_stage(record)

    def _fail(self, report: ProvisionReport, stage: Stage, error: ProvisionError) -> None:
        if error.stage is None:
            error.stage = stage
        logger.error("Stage %s failed: %s", error.stage.value, error.message)
        self._record(report, error.stage, StageStatus.FAILED, error.message)

    def run(self, request: ProvisionRequest) -> ProvisionReport:
        """Run every stage once, in order.

        Args:
            request: Run parameters.

        Returns:
            ProvisionReport. Check ``success`` for copy failures.

        Raises:
            ProvisionError: A fatal stage failed; ``stage`` names it.
        """
        report = ProvisionReport()
        stage = Stage.VALIDATE

        try:
            request = validate_request(request, self.backend)
            self._record(report, stage, StageStatus.COMPLETED)

            stage = Stage.RESOLVE
            try:
                target = resolve_device(request.disk_index, self.backend)
            except CommandError as e:
                e.stage = stage
                raise
            report.target = target
            self._record(report, stage, StageStatus.COMPLETED, target.identifier)

            stage = Stage.WORKSPACE
            workspace = prepare_workspace(request.work_dir, clear=request.clear_work_dir)
            report.workspace = workspace
            self._record(report, stage, StageStatus.COMPLETED, str(workspace.staging_dir))

            stage = Stage.ACQUIRE
            artifact = acquire_image(
                workspace,
                local_path=request.image_path,
                url=request.image_url,
                expected_checksum=request.expected_checksum,
                downloader=self.downloader,
            )
            report.artifact = artifact
            self._record(report, stage, StageStatus.COMPLETED, str(artifact.archive_path))

            stage = Stage.EXTRACT
            artifact.image_path = self.extractor(artifact.archive_path, workspace.staging_dir)
            self._record(report, stage, StageStatus.COMPLETED, str(artifact.image_path))

            stage = Stage.FLASH
            outcome = flash_image(
                artifact.image_path,
                target,
                self.confirm,
                backend=self.backend,
                writer=self.writer,
                verification_mode=request.verification_mode,
            )
            report.flash = outcome
            if outcome.skipped:
                self._record(
                    report,
                    stage,
                    StageStatus.SKIPPED,
                    f"declined; continuing with the card currently at {target.identifier}",
                )
            else:
                self._record(
                    report,
                    stage,
                    StageStatus.COMPLETED,
                    f"{outcome.bytes_written} bytes, verification "
                    f"{outcome.verification_result.value}",
                )

            stage = Stage.REINSERT
            logger.info("Waiting for disk %d to be re-inserted", target.index)
            self.wait_for_reinsert(target)
            self._record(report, stage, StageStatus.COMPLETED, "acknowledged")

        except ProvisionError as e:
            self._fail(report, stage, e)
            raise

        report.repair = repair_partitions(
            self.backend,
            target,
            selector=self.selector,
            designator=request.mount_designator,
            label=request.share_label,
        )
        self._record_repair(report, report.repair)

        report.sync = sync_files(
            report.repair.volume,
            request.user_files,
            second_card=request.second_card,
            copier=self.copier,
        )
        self._record_sync(report, report.sync)

        return report

    def _record_repair(self, report: ProvisionReport, repair: RepairResult) -> None:
        if repair.status in (RepairStatus.REPAIRED, RepairStatus.UNCHANGED):
            status = StageStatus.COMPLETED
        elif repair.status is RepairStatus.DEGRADED:
            status = StageStatus.DEGRADED
        else:
            status = StageStatus.FAILED
        message = repair.status.value
        if repair.volume is not None:
            message = f"{message}; volume {repair.volume.root_path}"
        if repair.error is not None:
            message = f"{message}; {repair.error.message}"
        self._record(report, Stage.REPAIR, status, message, actions=list(repair.actions))

    def _record_sync(self, report: ProvisionReport, sync: SyncResult) -> None:
        if sync.failed:
            self._record(
                report,
                Stage.SYNC,
                StageStatus.FAILED,
                f"{len(sync.failed)} copy operation(s) failed",
            )
        elif not sync.copied:
            self._record(
                report,
                Stage.SYNC,
                StageStatus.SKIPPED,
                "; ".join(sync.skipped) or "nothing to copy",
            )
        else:
            self._record(
                report, Stage.SYNC, StageStatus.COMPLETED, f"{len(sync.copied)} copied"
            )


__all__ = [
    "Extractor",
    "ProvisionReport",
    "ProvisionRequest",
    "Provisioner",
    "StageObserver",
    "WaitForReinsert",
    "validate_request",
]
