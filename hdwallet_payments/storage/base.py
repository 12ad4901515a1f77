"""
Atomic JSON file store and the registry of critical files.

Every critical file is wrapped in a ``JsonFile``: reads validate the document
shape, writes go to a temporary file that is renamed into place, and a document
that fails validation is handed to a corruption hook (which must preserve a copy)
before being reset to its default content. A required file that has gone missing
is handed to a missing-file hook, which supplies the content of a backup; only a
file with no backups at all starts over from its default.
"""

import json
import logging
import os
import shutil
import threading
import time
from abc import ABC
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from .. import config
from ..exceptions import BackupError, DataIntegrityError, StorageError, ValidationError
from ..models import FileHealth, ValidationResult
from ..utils import backup_timestamp, retry, utc_now

try:
    import fcntl

    HAS_FCNTL = True
except ImportError:
    HAS_FCNTL = False

try:
    import msvcrt

    HAS_MSVCRT = True
except ImportError:
    HAS_MSVCRT = False

logger = logging.getLogger(__name__)

Validator = Callable[[Any], ValidationResult]


def validate_ledger(data: Any) -> ValidationResult:
    if not isinstance(data, list):
        return ValidationResult(False, f"Ledger must be a JSON array, got {type(data).__name__}")
    for position, entry in enumerate(data):
        if not isinstance(entry, dict):
            return ValidationResult(False, f"Ledger entry {position} is not an object")
    return ValidationResult(True)


def validate_address_book(data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(False, f"Address book must be a JSON object, got {type(data).__name__}")
    if "mnemonic" not in data:
        return ValidationResult(False, "Address book is missing 'mnemonic'")
    if not isinstance(data.get("activeAddresses"), dict):
        return ValidationResult(False, "Address book 'activeAddresses' must be an object")
    return ValidationResult(True)


def validate_index_map(data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(False, f"Index map must be a JSON object, got {type(data).__name__}")
    for address, index in data.items():
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            return ValidationResult(False, f"Index map entry for {address} is not a non-negative integer")
    return ValidationResult(True)


@dataclass(frozen=True)
class CriticalFileSpec:
    """A file the integrity monitor polices."""

    path: str
    required: bool
    validator: Validator
    default_content: str
    label: str

    @property
    def basename(self) -> str:
        return os.path.basename(self.path)

    def default_data(self) -> Any:
        return json.loads(self.default_content)


def critical_files(data_dir: str) -> Dict[str, CriticalFileSpec]:
    """Registry of critical files keyed by basename."""
    specs = [
        CriticalFileSpec(
            path=os.path.join(data_dir, config.LEDGER_FILE),
            required=True,
            validator=validate_ledger,
            default_content="[]",
            label="ledger",
        ),
        CriticalFileSpec(
            path=os.path.join(data_dir, config.ADDRESS_BOOK_FILE),
            required=True,
            validator=validate_address_book,
            default_content='{"mnemonic": "", "activeAddresses": {}}',
            label="address book",
        ),
        CriticalFileSpec(
            path=os.path.join(data_dir, config.INDEX_MAP_FILE),
            required=False,
            validator=validate_index_map,
            default_content="{}",
            label="derivation index map",
        ),
    ]
    return {spec.basename: spec for spec in specs}


def inspect_file(spec: CriticalFileSpec) -> tuple[FileHealth, Optional[str]]:
    """Classify a file without modifying it."""
    if not os.path.exists(spec.path):
        return FileHealth.MISSING, None
    try:
        with open(spec.path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        return FileHealth.CORRUPTED, f"Unreadable: {e}"
    if not raw.strip():
        return FileHealth.EMPTY, "File is empty"
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return FileHealth.CORRUPTED, f"Invalid JSON: {e}"
    result = spec.validator(data)
    if not result:
        return FileHealth.CORRUPTED, result.error
    return FileHealth.HEALTHY, None


def sibling_corruption_backup(path: str) -> str:
    """Fallback corruption hook: copy the bad file next to itself."""
    target = f"{path}.corrupted.{backup_timestamp()}.bak"
    shutil.copyfile(path, target)
    return target


_PATH_LOCKS: dict[str, threading.RLock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: str) -> threading.RLock:
    key = os.path.abspath(path)
    with _PATH_LOCKS_GUARD:
        if key not in _PATH_LOCKS:
            _PATH_LOCKS[key] = threading.RLock()
        return _PATH_LOCKS[key]


class JsonFile:
    """
    One critical JSON document with single-writer semantics.

    All instances pointing at the same path share a per-process lock; an advisory
    OS lock on ``<path>.lock`` serializes writers across processes. Readers never
    observe a partially written document because writes are renamed into place.
    """

    def __init__(
        self,
        spec: CriticalFileSpec,
        on_corrupted: Optional[Callable[[str], Optional[str]]] = None,
        on_missing: Optional[Callable[[str], Optional[bytes]]] = None,
    ):
        self.spec = spec
        self.path = spec.path
        self.on_corrupted = on_corrupted or sibling_corruption_backup
        self.on_missing = on_missing
        self._lock = _lock_for(self.path)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(f"{self.path}.lock", "a+") as lock_file:
                if HAS_FCNTL:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                elif HAS_MSVCRT:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                try:
                    yield
                finally:
                    if HAS_FCNTL:
                        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                    elif HAS_MSVCRT:
                        msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def read(self) -> Any:
        """Current document; a missing file is restored or defaulted as in ``_load_missing``."""
        with self._locked():
            return self._load()

    def write(self, data: Any) -> None:
        result = self.spec.validator(data)
        if not result:
            raise ValidationError(f"Refusing to write invalid {self.spec.label}: {result.error}", field="data")
        with self._locked():
            self._atomic_write(data)

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Read-modify-write under the file lock; the yielded document is written back on success."""
        with self._locked():
            data = self._load()
            yield data
            result = self.spec.validator(data)
            if not result:
                raise ValidationError(f"Refusing to write invalid {self.spec.label}: {result.error}", field="data")
            self._atomic_write(data)

    def _load(self) -> Any:
        if not os.path.exists(self.path):
            return self._load_missing()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
        except OSError as e:
            raise StorageError(f"Failed to read {self.spec.label}: {e}", path=self.path, operation="read")

        if not raw.strip():
            return self._recover(FileHealth.EMPTY, "File is empty")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            return self._recover(FileHealth.CORRUPTED, f"Invalid JSON: {e}")
        result = self.spec.validator(data)
        if not result:
            return self._recover(FileHealth.CORRUPTED, result.error)
        return data

    def _load_missing(self) -> Any:
        """
        Content for a file that does not exist.

        Optional files and files without a hook get the default document. For a
        required file the hook returns backup bytes, which are written back into
        place, or ``None`` when the file was never backed up. The hook raises
        ``DataIntegrityError`` when backups exist but none can be used.
        """
        if not self.spec.required or self.on_missing is None:
            return self.spec.default_data()
        content = self.on_missing(self.path)
        if content is None:
            return self.spec.default_data()
        try:
            data = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DataIntegrityError(
                f"{self.spec.label} is missing and its backup could not be parsed",
                path=self.path,
                operation="restore",
                health=FileHealth.MISSING.value,
            ) from e
        result = self.spec.validator(data)
        if not result:
            raise DataIntegrityError(
                f"{self.spec.label} is missing and its backup is invalid: {result.error}",
                path=self.path,
                operation="restore",
                health=FileHealth.MISSING.value,
            )
        self._atomic_write_bytes(content)
        logger.error("FLAGGED: %s at %s was missing and has been restored from backup", self.spec.label, self.path)
        return data

    def _recover(self, health: FileHealth, reason: Optional[str]) -> Any:
        """Preserve the bad file, then reset it to the default document."""
        try:
            backup_path = self.on_corrupted(self.path)
        except (OSError, StorageError, BackupError) as e:
            raise DataIntegrityError(
                f"{self.spec.label} is {health.value} and could not be backed up; refusing to reset it",
                path=self.path,
                operation="recover",
                health=health.value,
            ) from e
        if not backup_path:
            raise DataIntegrityError(
                f"{self.spec.label} is {health.value} and no backup was captured; refusing to reset it",
                path=self.path,
                operation="recover",
                health=health.value,
            )
        logger.error(
            "FLAGGED: %s at %s was %s (%s). Backed up to %s and reset to default.",
            self.spec.label,
            self.path,
            health.value,
            reason,
            backup_path,
        )
        data = self.spec.default_data()
        self._atomic_write(data)
        return data

    def replace_raw(self, content: bytes) -> None:
        """Swap in raw bytes (a restored backup) atomically, without validating them."""
        with self._locked():
            self._atomic_write_bytes(content)

    def _atomic_write(self, data: Any) -> None:
        self._atomic_write_bytes(json.dumps(data, indent=2, default=str).encode("utf-8"))

    @retry(exceptions=OSError, max_attempts=3, initial_delay=0.05, max_delay=0.5, retry_message="JSON file write")
    def _atomic_write_bytes(self, content: bytes) -> None:
        tmp_path = f"{self.path}.{os.getpid()}.{threading.get_ident()}.tmp"
        try:
            with open(tmp_path, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            logger.debug("Saved data to: %s", self.path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)


@dataclass
class StorageStatus:
    """Represents the current status of a file-backed store."""

    is_healthy: bool = True
    last_check: Optional[datetime] = None
    error_message: Optional[str] = None
    response_time_ms: Optional[float] = None
    record_count: Optional[int] = None

    def __post_init__(self):
        if self.last_check is None:
            self.last_check = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "error_message": self.error_message,
            "response_time_ms": self.response_time_ms,
            "record_count": self.record_count,
        }


class JsonStore(ABC):
    """Base class for stores backed by a single ``JsonFile``."""

    def __init__(self, file: JsonFile, name: str):
        self.file = file
        self.name = name
        self.status = StorageStatus()
        logger.info("Initialized %s at %s", self.name, self.file.path)

    def _record_count(self, data: Any) -> int:
        return len(data)

    def check_health(self) -> StorageStatus:
        """Read the backing file and time the round trip."""
        start = time.monotonic()
        try:
            data = self.file.read()
            self.status = StorageStatus(
                is_healthy=True,
                response_time_ms=(time.monotonic() - start) * 1000,
                record_count=self._record_count(data),
            )
        except (StorageError, OSError) as e:
            self.status = StorageStatus(is_healthy=False, error_message=str(e))
            logger.error("Health check failed for %s: %s", self.name, e)
        return self.status
