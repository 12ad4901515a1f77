"""
Integrity monitoring for the critical files.

Each check classifies every registered file as healthy, missing, empty or
corrupted. A present file that is not healthy is copied to the corruption
backups before anything else touches it.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from .backup import BackupManager
from .exceptions import BackupError, ValidationError
from .models import BackupReason, DatabaseStatus, FileHealth, FileStatus
from .storage.base import CriticalFileSpec, JsonFile, inspect_file
from .utils import TTLCache

logger = logging.getLogger(__name__)


class IntegrityMonitor:
    """Validates critical files and drives recovery through a ``BackupManager``."""

    def __init__(self, specs: Dict[str, CriticalFileSpec], backups: BackupManager, cache_ttl: float = 60.0):
        self.specs = specs
        self.backups = backups
        self.cache: TTLCache[DatabaseStatus] = TTLCache(cache_ttl)
        self._flagged: Dict[str, tuple] = {}
        backups.add_restore_listener(self.invalidate)

    def invalidate(self) -> None:
        self.cache.invalidate()

    def _file_signature(self, path: str) -> Optional[tuple]:
        try:
            stat = os.stat(path)
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def _preserve(self, spec: CriticalFileSpec, health: FileHealth, issues: List[str]) -> None:
        signature = self._file_signature(spec.path)
        if signature is not None and self._flagged.get(spec.path) == signature:
            return
        try:
            record = self.backups.backup_file(spec.path, BackupReason.CORRUPTED)
        except BackupError as e:
            issues.append(f"Could not back up {health.value} {spec.basename}: {e.message}")
            return
        self._flagged[spec.path] = signature
        issues.append(f"Backed up {health.value} {spec.basename} as {record.file_name}")

    def check_status(self, force: bool = False) -> DatabaseStatus:
        """Classify every critical file; cached for the monitor's TTL unless ``force`` is set."""
        if not force:
            cached = self.cache.get()
            if cached is not None:
                return cached

        status = DatabaseStatus()
        for spec in self.specs.values():
            health, error = inspect_file(spec)
            status.files[spec.path] = FileStatus(path=spec.path, health=health, required=spec.required, error=error)
            if health == FileHealth.HEALTHY:
                self._flagged.pop(spec.path, None)
                continue
            if health == FileHealth.MISSING:
                if spec.required:
                    logger.error("FLAGGED: required %s is missing at %s", spec.label, spec.path)
                    status.issues.append(f"Required file {spec.basename} is missing")
                else:
                    status.issues.append(f"Optional file {spec.basename} is missing")
                continue
            logger.error("FLAGGED: %s at %s is %s: %s", spec.label, spec.path, health.value, error)
            status.issues.append(f"{spec.basename} is {health.value}: {error}")
            self._preserve(spec, health, status.issues)

        if status.is_healthy:
            logger.debug("All %d critical files healthy", len(self.specs))
        self.cache.set(status)
        return status

    def _recovery_targets(self, status: DatabaseStatus) -> List[str]:
        targets = []
        for path in status.corrupted_files + status.missing_files:
            spec = self._spec_by_path(path)
            if spec is not None:
                targets.append(spec.basename)
        return targets

    def _spec_by_path(self, path: str) -> Optional[CriticalFileSpec]:
        for spec in self.specs.values():
            if spec.path == path:
                return spec
        return None

    def auto_recover(self) -> Dict[str, Any]:
        """Restore every corrupted or missing file from its newest valid backup."""
        status = self.check_status(force=True)
        targets = [
            name
            for name in self._recovery_targets(status)
            if self.specs[name].required or self.backups.list_backups(name)
        ]
        if not targets:
            return {"success": True, "message": "All critical files are healthy", "results": []}

        results = self.backups.auto_recover(targets)
        self.invalidate()
        restored = sum(1 for r in results if r.success)
        return {
            "success": restored == len(results),
            "message": f"Restored {restored} of {len(results)} file(s)",
            "results": [r.to_dict() for r in results],
        }

    def initialize(self) -> Dict[str, Any]:
        """
        Prepare the data directory.

        Missing or corrupted files are restored from their newest valid backup.
        A required file with no backups at all is created from its default. An
        ``initial`` backup of every present file is taken at the end.
        """
        for directory in {os.path.dirname(spec.path) for spec in self.specs.values()} | {
            self.backups.backup_dir,
            self.backups.corruption_dir,
        }:
            if directory:
                os.makedirs(directory, exist_ok=True)

        status = self.check_status(force=True)
        created: List[str] = []
        recovered: List[Dict[str, Any]] = []

        for name in self._recovery_targets(status):
            spec = self.specs[name]
            health = status.files[spec.path].health
            if self.backups.newest_valid_backup(name) is not None:
                result = self.backups.auto_recover([name])[0]
                recovered.append(result.to_dict())
                if result.success:
                    continue
            if health == FileHealth.MISSING:
                if not spec.required:
                    continue
                if self.backups.list_backups(name):
                    logger.error("FLAGGED: %s is missing and no backup of it is valid; leaving it for the operator", name)
                    continue
            elif spec.path not in self._flagged:
                logger.error("FLAGGED: %s could not be preserved; not resetting it", name)
                continue
            try:
                JsonFile(spec).write(spec.default_data())
            except ValidationError as e:
                logger.error("Could not create default %s: %s", spec.label, e.message)
                continue
            created.append(name)
            logger.info("Wrote default content to %s", spec.path)

        self.invalidate()
        initial = self.backups.backup_all(BackupReason.INITIAL)
        final = self.check_status(force=True)
        return {
            "success": final.is_healthy,
            "created": created,
            "recovered": recovered,
            "initialBackups": [r.file_name for r in initial],
            "status": final.to_dict(),
        }
