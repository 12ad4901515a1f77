"""
Backup and recovery of critical files.

Backups are verbatim copies named ``<basename>.<reason>.<timestamp>.bak``, where the
timestamp is ISO 8601 with colons replaced by dashes. Copies of corrupted files go
to a separate directory so they are never mistaken for restore candidates by
operators browsing the regular backups.
"""

import hashlib
import json
import logging
import os
import re
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .exceptions import BackupError, DataIntegrityError
from .logging_config import log_blockchain_event
from .models import BackupReason, BackupRecord, RestoreResult, ValidationResult
from .storage.base import CriticalFileSpec, JsonFile
from .utils import backup_timestamp, isoformat_z, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

_REASONS = "|".join(re.escape(reason.value) for reason in BackupReason)
BACKUP_NAME_PATTERN = re.compile(
    rf"^(?P<source>.+)\.(?P<reason>{_REASONS})\.(?P<timestamp>\d{{4}}-\d{{2}}-\d{{2}}(?:T[0-9\-]+(?:\.\d+)?Z?)?)\.bak$"
)
SCHEDULED_JOB_ID = "scheduled_backup"


def backup_name(source_basename: str, reason: BackupReason, when: Optional[datetime] = None) -> str:
    return f"{source_basename}.{reason.value}.{backup_timestamp(when)}.bak"


def _timestamp_from_name(raw: str) -> Optional[datetime]:
    # 2025-05-04T10-11-12.123Z -> 2025-05-04T10:11:12.123Z
    date, _, time_part = raw.partition("T")
    if not time_part:
        return parse_timestamp(f"{date}T00:00:00Z")
    clock, dot, fraction = time_part.partition(".")
    return parse_timestamp(f"{date}T{clock.replace('-', ':')}{dot}{fraction}")


def parse_backup_name(file_name: str) -> Optional[tuple[str, BackupReason, Optional[datetime]]]:
    """Split a backup file name into (source basename, reason, timestamp)."""
    match = BACKUP_NAME_PATTERN.match(file_name)
    if not match:
        return None
    return match.group("source"), BackupReason(match.group("reason")), _timestamp_from_name(match.group("timestamp"))


class BackupManager:
    """Captures, lists, validates, restores and expires backups of the critical files."""

    def __init__(
        self,
        specs: Dict[str, CriticalFileSpec],
        backup_dir: str,
        corruption_dir: str,
        max_age_days: int = config.DEFAULT_BACKUP_MAX_AGE_DAYS,
    ):
        self.specs = specs
        self.backup_dir = backup_dir
        self.corruption_dir = corruption_dir
        self.max_age_days = max_age_days
        self._listeners: List[Callable[[], None]] = []
        self._name_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    @classmethod
    def for_data_dir(cls, data_dir: str, specs: Dict[str, CriticalFileSpec], **kwargs) -> "BackupManager":
        return cls(
            specs,
            backup_dir=os.path.join(data_dir, config.BACKUP_DIR),
            corruption_dir=os.path.join(data_dir, config.CORRUPTION_BACKUP_DIR),
            **kwargs,
        )

    def add_restore_listener(self, listener: Callable[[], None]) -> None:
        """Called after every restore, e.g. to drop cached integrity status."""
        self._listeners.append(listener)

    def _notify_restored(self) -> None:
        for listener in self._listeners:
            listener()

    def _spec_for(self, source_basename: str) -> Optional[CriticalFileSpec]:
        return self.specs.get(source_basename)

    def _unique_path(self, directory: str, source_basename: str, reason: BackupReason) -> str:
        when = utc_now()
        path = os.path.join(directory, backup_name(source_basename, reason, when))
        while os.path.exists(path):
            when += timedelta(milliseconds=1)
            path = os.path.join(directory, backup_name(source_basename, reason, when))
        return path

    def backup_file(self, path: str, reason: BackupReason = BackupReason.MANUAL) -> BackupRecord:
        """Copy ``path`` verbatim into the backup directory for ``reason``."""
        if not os.path.exists(path):
            raise BackupError(f"Cannot back up missing file {path}", backup_file=path)
        directory = self.corruption_dir if reason == BackupReason.CORRUPTED else self.backup_dir
        os.makedirs(directory, exist_ok=True)
        source = os.path.basename(path)
        try:
            with open(path, "rb") as f:
                content = f.read()
            with self._name_lock:
                target = self._unique_path(directory, source, reason)
                with open(target, "xb") as f:
                    f.write(content)
        except OSError as e:
            raise BackupError(f"Failed to back up {source}: {e}", backup_file=path) from e

        record = self._record(target)
        if reason == BackupReason.CORRUPTED:
            logger.error("FLAGGED: preserved corrupted %s as %s", source, record.file_name)
        else:
            logger.info("Backed up %s as %s (%d bytes)", source, record.file_name, record.size_bytes)
        return record

    def corruption_hook(self, path: str) -> str:
        """``JsonFile`` corruption hook: preserve the bad file and return the copy's path."""
        return self.backup_file(path, BackupReason.CORRUPTED).path

    def missing_file_hook(self, path: str) -> Optional[bytes]:
        """
        ``JsonFile`` missing-file hook: bytes of the newest valid backup of ``path``.

        Returns ``None`` when the file was never backed up, so the caller may start
        from the default document. Raises ``DataIntegrityError`` when backups exist
        but none passes validation.
        """
        source = os.path.basename(path)
        if not self.list_backups(source):
            return None
        record = self.newest_valid_backup(source)
        if record is None:
            raise DataIntegrityError(
                f"{source} is missing and none of its backups is valid; refusing to recreate it",
                path=path,
                operation="restore",
                health="missing",
            )
        try:
            with open(record.path, "rb") as f:
                content = f.read()
        except OSError as e:
            raise DataIntegrityError(
                f"{source} is missing and backup {record.file_name} could not be read",
                path=path,
                operation="restore",
                health="missing",
            ) from e
        logger.warning("Restoring missing %s from %s", source, record.file_name)
        log_blockchain_event("missing_file_restored", level=logging.WARNING, file=source, backup=record.file_name)
        return content

    def backup_all(self, reason: BackupReason = BackupReason.SCHEDULED) -> List[BackupRecord]:
        """Back up every critical file that exists. Missing files are skipped."""
        records = []
        for spec in self.specs.values():
            if not os.path.exists(spec.path):
                logger.debug("Skipping backup of missing %s", spec.basename)
                continue
            try:
                records.append(self.backup_file(spec.path, reason))
            except BackupError as e:
                logger.error("Backup of %s failed: %s", spec.basename, e.message)
        log_blockchain_event("backup_all", reason=reason.value, files=len(records))
        return records

    def _record(self, path: str) -> BackupRecord:
        file_name = os.path.basename(path)
        parsed = parse_backup_name(file_name)
        if parsed is None:
            raise BackupError(f"Not a backup file name: {file_name}", backup_file=file_name)
        source, reason, created_at = parsed
        stat = os.stat(path)
        if created_at is None:
            created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        return BackupRecord(
            file_name=file_name,
            path=path,
            source_file=source,
            reason=reason,
            created_at=created_at,
            size_bytes=stat.st_size,
        )

    def list_backups(self, source_file: Optional[str] = None, include_corrupted: bool = True) -> List[BackupRecord]:
        """Backups on disk, newest first. Files that do not follow the naming scheme are ignored."""
        directories = [self.backup_dir] + ([self.corruption_dir] if include_corrupted else [])
        records = []
        for directory in directories:
            if not os.path.isdir(directory):
                continue
            for file_name in os.listdir(directory):
                if not file_name.endswith(".bak") or parse_backup_name(file_name) is None:
                    continue
                try:
                    record = self._record(os.path.join(directory, file_name))
                except (OSError, BackupError) as e:
                    logger.warning("Skipping unreadable backup %s: %s", file_name, e)
                    continue
                if source_file is None or record.source_file == source_file:
                    records.append(record)
        records.sort(key=lambda r: (r.created_at, r.file_name), reverse=True)
        return records

    def resolve(self, backup: Union[str, BackupRecord]) -> str:
        """Absolute path of a backup given its name or path; refuses paths outside the backup directories."""
        if isinstance(backup, BackupRecord):
            backup = backup.path
        candidates = [backup] if os.path.isabs(backup) or os.sep in backup else [
            os.path.join(self.backup_dir, backup),
            os.path.join(self.corruption_dir, backup),
        ]
        allowed = [os.path.realpath(self.backup_dir), os.path.realpath(self.corruption_dir)]
        for candidate in candidates:
            real = os.path.realpath(candidate)
            if not any(os.path.commonpath([real, root]) == root for root in allowed):
                raise BackupError(f"Backup path is outside the backup directories: {backup}", backup_file=backup)
            if os.path.exists(real):
                return real
        raise BackupError(f"Backup file not found: {backup}", backup_file=backup)

    def _validate_content(self, source_basename: str, content: bytes) -> ValidationResult:
        spec = self._spec_for(source_basename)
        if spec is None:
            return ValidationResult(False, f"Unknown source file {source_basename}")
        if not content.strip():
            return ValidationResult(False, "Backup is empty")
        try:
            data = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return ValidationResult(False, f"Invalid JSON: {e}")
        return spec.validator(data)

    def validate_backup(self, backup: Union[str, BackupRecord]) -> ValidationResult:
        """Check that a backup parses and passes its source file's schema validator."""
        try:
            path = self.resolve(backup)
            record = self._record(path)
            with open(path, "rb") as f:
                content = f.read()
        except (OSError, BackupError) as e:
            return ValidationResult(False, str(e))
        return self._validate_content(record.source_file, content)

    def verify_backup(self, backup: Union[str, BackupRecord]) -> Dict[str, Any]:
        """Validation result plus a sha256 checksum of the backup bytes."""
        path = self.resolve(backup)
        record = self._record(path)
        with open(path, "rb") as f:
            content = f.read()
        result = self._validate_content(record.source_file, content)
        return {
            "valid": result.valid,
            "error": result.error,
            "checksum": hashlib.sha256(content).hexdigest(),
            **record.to_dict(),
        }

    def restore(
        self, backup: Union[str, BackupRecord], force: bool = False, snapshot_current: bool = True
    ) -> RestoreResult:
        """
        Write a backup's content over its source file.

        The backup is validated first unless ``force`` is set. The current file,
        if any, is kept as a ``pre-restore`` backup before being replaced.
        """
        try:
            path = self.resolve(backup)
            record = self._record(path)
        except BackupError as e:
            return RestoreResult(False, backup_file=str(backup), error=e.message)
        spec = self._spec_for(record.source_file)
        if spec is None:
            return RestoreResult(
                False, backup_file=record.file_name, error=f"Unknown source file {record.source_file}"
            )

        with open(path, "rb") as f:
            content = f.read()
        if not force:
            result = self._validate_content(record.source_file, content)
            if not result:
                logger.warning("Refusing to restore invalid backup %s: %s", record.file_name, result.error)
                return RestoreResult(
                    False, file=spec.path, backup_file=record.file_name, error=f"Backup failed validation: {result.error}"
                )

        if snapshot_current and os.path.exists(spec.path):
            try:
                self.backup_file(spec.path, BackupReason.PRE_RESTORE)
            except BackupError as e:
                return RestoreResult(
                    False, file=spec.path, backup_file=record.file_name, error=f"Pre-restore snapshot failed: {e.message}"
                )

        try:
            JsonFile(spec).replace_raw(content)
        except OSError as e:
            return RestoreResult(False, file=spec.path, backup_file=record.file_name, error=f"Restore failed: {e}")

        self._notify_restored()
        logger.warning("Restored %s from %s", spec.basename, record.file_name)
        log_blockchain_event("backup_restored", level=logging.WARNING, file=spec.basename, backup=record.file_name)
        return RestoreResult(
            True, file=spec.path, backup_file=record.file_name, message=f"Restored {spec.basename} from {record.file_name}"
        )

    def newest_valid_backup(self, source_basename: str) -> Optional[BackupRecord]:
        """Newest backup of a file that passes validation; a newer corrupt backup is skipped."""
        for record in self.list_backups(source_basename):
            result = self.validate_backup(record)
            if result:
                return record
            logger.info("Skipping invalid backup %s: %s", record.file_name, result.error)
        return None

    def auto_recover(self, source_basenames: Iterable[str]) -> List[RestoreResult]:
        """Restore each named file from its newest valid backup. One result per file."""
        results = []
        for source in source_basenames:
            record = self.newest_valid_backup(source)
            if record is None:
                spec = self._spec_for(source)
                results.append(
                    RestoreResult(False, file=spec.path if spec else source, error=f"No valid backup found for {source}")
                )
                continue
            results.append(self.restore(record))
        restored = sum(1 for r in results if r.success)
        if results:
            logger.info("Auto-recovery restored %d of %d file(s)", restored, len(results))
        return results

    def import_backup(self, file_name: str, content: Union[bytes, str], force: bool = False) -> BackupRecord:
        """
        Store uploaded content as an ``uploaded`` backup.

        ``file_name`` may be a critical file's basename or an existing backup name.
        """
        if isinstance(content, str):
            content = content.encode("utf-8")
        name = os.path.basename(file_name)
        parsed = parse_backup_name(name)
        source = parsed[0] if parsed else name
        if self._spec_for(source) is None:
            raise BackupError(f"Uploaded file does not belong to a critical file: {name}", backup_file=name)
        if not force:
            result = self._validate_content(source, content)
            if not result:
                raise BackupError(f"Uploaded backup failed validation: {result.error}", backup_file=name)

        os.makedirs(self.backup_dir, exist_ok=True)
        with self._name_lock:
            target = self._unique_path(self.backup_dir, source, BackupReason.UPLOADED)
            with open(target, "xb") as f:
                f.write(content)
        logger.info("Imported uploaded backup for %s as %s", source, os.path.basename(target))
        return self._record(target)

    def cleanup(self, max_age_days: Optional[int] = None) -> Dict[str, Any]:
        """Delete backups older than ``max_age_days``, always keeping the newest backup of each file."""
        max_age_days = self.max_age_days if max_age_days is None else max_age_days
        cutoff = utc_now() - timedelta(days=max_age_days)
        newest: Dict[str, str] = {}
        deleted: List[str] = []
        errors: Dict[str, str] = {}

        for record in self.list_backups():
            # list_backups is newest first
            newest.setdefault(record.source_file, record.file_name)
            if newest[record.source_file] == record.file_name or record.created_at >= cutoff:
                continue
            try:
                os.remove(record.path)
                deleted.append(record.file_name)
            except OSError as e:
                errors[record.file_name] = str(e)
                logger.error("Could not delete backup %s: %s", record.file_name, e)

        logger.info("Backup cleanup removed %d file(s) older than %d day(s)", len(deleted), max_age_days)
        return {
            "deleted": deleted,
            "deletedCount": len(deleted),
            "keptNewest": sorted(newest.values()),
            "errors": errors,
            "cutoff": isoformat_z(cutoff),
        }

    def run_scheduled_backup(self) -> List[BackupRecord]:
        records = self.backup_all(BackupReason.SCHEDULED)
        self.cleanup()
        return records

    def start_scheduler(self, interval_hours: float = config.DEFAULT_BACKUP_INTERVAL_HOURS) -> BackgroundScheduler:
        """Run ``run_scheduled_backup`` every ``interval_hours`` on a background thread."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.reschedule_job(SCHEDULED_JOB_ID, trigger=IntervalTrigger(hours=interval_hours))
            logger.info("Rescheduled backups every %.2f hour(s)", interval_hours)
            return self._scheduler

        scheduler = BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
            timezone="UTC",
        )
        scheduler.add_job(
            self.run_scheduled_backup,
            trigger=IntervalTrigger(hours=interval_hours),
            id=SCHEDULED_JOB_ID,
            name="Scheduled critical file backup",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Scheduled backups every %.2f hour(s)", interval_hours)
        return scheduler

    def stop_scheduler(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduled backups stopped")

    @property
    def scheduler_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
