"""JSON file persistence for key lifecycle metadata.

The metadata file is a pretty-printed JSON object keyed by key name.  Every
mutation is a whole-file read-modify-write: there is no locking, so callers
are expected to drive rotations sequentially from a single process.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import structlog

from envkeeper.errors import MetadataValidationError, MetadataWriteError
from envkeeper.models import (
    AuditTrail,
    InterruptedRotation,
    KeyMetadata,
    KeyStatus,
    RotationConfig,
    RotationReason,
    StatusTracking,
    UsageTracking,
)
from envkeeper.settings import DEFAULT_MAX_AGE_DAYS, DEFAULT_WARNING_THRESHOLD_DAYS
from envkeeper.time_utils import Clock, backup_timestamp, parse_iso, to_iso, utc_now
from envkeeper.validator import validate_metadata_record

logger = structlog.get_logger(__name__)

# Fields revived from ISO-8601 strings to ``datetime`` when reading.
DATE_FIELDS = frozenset(
    {
        "createdAt",
        "lastRotatedAt",
        "lastAccessedAt",
        "lastStatusChange",
        "lastScheduledCheck",
        "lastHealthCheck",
        "lastWarningIssued",
        "timestamp",
    }
)

ARCHIVE_DIRNAME = "archive"
JOURNAL_FILENAME = "rotation-journal.json"


def _revive_dates(obj: Dict[str, Any]) -> Dict[str, Any]:
    for name in DATE_FIELDS.intersection(obj):
        value = obj[name]
        if isinstance(value, str):
            parsed = parse_iso(value)
            if parsed is not None:
                obj[name] = parsed
    return obj


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def decode_metadata(content: str) -> Any:
    """Decode metadata JSON, reviving the known date fields."""

    return json.loads(content, object_hook=_revive_dates)


def encode_metadata(records: Mapping[str, Any]) -> str:
    """Encode already-rendered metadata records as pretty-printed JSON."""

    return json.dumps(records, indent=2, default=_json_default)


def _atomic_write(path: Path, content: str) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(content, encoding="utf-8")
    os.replace(tmp_path, path)


def create_default_metadata(
    key_name: str,
    *,
    now: datetime,
    rotation_config: Optional[RotationConfig] = None,
) -> KeyMetadata:
    """Return a brand-new, healthy record for ``key_name``."""

    return KeyMetadata(
        key_name=key_name,
        created_at=now,
        rotation_count=0,
        rotation_config=rotation_config
        or RotationConfig(
            max_age_in_days=DEFAULT_MAX_AGE_DAYS,
            warning_threshold_in_days=DEFAULT_WARNING_THRESHOLD_DAYS,
        ),
        audit_trail=AuditTrail(),
        usage_tracking=UsageTracking(),
        status_tracking=StatusTracking(current_status=KeyStatus.HEALTHY, last_status_change=now),
    )


class KeyMetadataStore:
    """Durable, validated storage of per-key lifecycle records."""

    def __init__(self, metadata_path: os.PathLike[str] | str, *, clock: Clock = utc_now) -> None:
        self.metadata_path = Path(metadata_path)
        self._clock = clock

    @property
    def archive_dir(self) -> Path:
        return self.metadata_path.parent / ARCHIVE_DIRNAME

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    async def read_all(self) -> Dict[str, KeyMetadata]:
        """Return every stored record; an absent, empty or corrupt file yields ``{}``."""

        return await asyncio.to_thread(self._read_all_sync)

    def _read_all_sync(self) -> Dict[str, KeyMetadata]:
        path = self.metadata_path
        if not path.exists():
            logger.info("metadata_file_missing", path=str(path))
            return {}
        try:
            content = path.read_text(encoding="utf-8")
        except OSError:
            logger.exception("metadata_read_failed", path=str(path))
            return {}
        if not content.strip():
            logger.warning("metadata_file_empty", path=str(path))
            return {}
        try:
            decoded = decode_metadata(content)
        except json.JSONDecodeError as exc:
            logger.warning("metadata_json_invalid", path=str(path), error=str(exc))
            return {}
        if not validate_metadata_record(decoded):
            logger.warning("metadata_validation_failed", path=str(path))
            return {}
        records = {name: KeyMetadata.from_dict(value) for name, value in decoded.items()}
        logger.debug("metadata_loaded", keys=len(records))
        return records

    async def get_key_metadata(self, key_name: str) -> Optional[KeyMetadata]:
        return (await self.read_all()).get(key_name)

    async def has_key_metadata(self, key_name: str) -> bool:
        return key_name in await self.read_all()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------
    async def write_all(self, records: Mapping[str, KeyMetadata]) -> None:
        """Validate and commit ``records`` as the complete metadata set."""

        rendered = {name: record.to_dict() for name, record in records.items()}
        if not validate_metadata_record(rendered):
            raise MetadataValidationError("Metadata validation failed before writing")
        content = encode_metadata(rendered)
        await asyncio.to_thread(self._write_sync, content)

    def _write_sync(self, content: str) -> None:
        path = self.metadata_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.exception("metadata_directory_failed", path=str(path.parent))
            raise MetadataWriteError(f"Unable to create metadata directory {path.parent}") from exc
        self._create_backup()
        try:
            _atomic_write(path, content)
        except OSError as exc:
            logger.exception("metadata_write_failed", path=str(path))
            raise MetadataWriteError(f"Failed to write key metadata to {path}") from exc

    def _create_backup(self) -> Optional[Path]:
        """Copy the current metadata file into the archive; failures are only logged."""

        path = self.metadata_path
        if not path.exists():
            logger.debug("metadata_backup_skipped", reason="no metadata file")
            return None
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            backup_path = self.archive_dir / f"{path.name}.backup-{backup_timestamp(self._clock())}"
            shutil.copyfile(path, backup_path)
        except OSError as exc:
            logger.warning("metadata_backup_failed", path=str(path), error=str(exc))
            return None
        logger.info("metadata_backup_created", backup=str(backup_path))
        return backup_path

    async def update_single_key_metadata(self, key_name: str, record: KeyMetadata) -> None:
        records = await self.read_all()
        records[key_name] = record
        await self.write_all(records)
        logger.info("metadata_key_updated", key=key_name)

    async def remove_key_metadata(self, key_name: str) -> bool:
        records = await self.read_all()
        if key_name not in records:
            logger.warning("metadata_key_missing_for_removal", key=key_name)
            return False
        del records[key_name]
        await self.write_all(records)
        logger.info("metadata_key_removed", key=key_name)
        return True

    def create_default_metadata(
        self, key_name: str, rotation_config: Optional[RotationConfig] = None
    ) -> KeyMetadata:
        return create_default_metadata(key_name, now=self._clock(), rotation_config=rotation_config)


class RotationJournal:
    """Side file recording rotations that are in flight or were interrupted.

    An entry exists while a rotation runs and survives a crash, so the next
    startup check can flag the key for a manual audit.
    """

    def __init__(self, journal_path: os.PathLike[str] | str) -> None:
        self.journal_path = Path(journal_path)

    @classmethod
    def beside(cls, store: KeyMetadataStore) -> "RotationJournal":
        return cls(store.metadata_path.parent / JOURNAL_FILENAME)

    async def entries(self) -> List[InterruptedRotation]:
        raw = await asyncio.to_thread(self._load_sync)
        entries: List[InterruptedRotation] = []
        for key_name, item in raw.items():
            try:
                entries.append(
                    InterruptedRotation(
                        key_name=key_name,
                        environment_file=str(item["environmentFile"]),
                        reason=RotationReason(item["reason"]),
                        state=str(item["state"]),
                        started_at=item["startedAt"],
                        updated_at=item["updatedAt"],
                        requires_manual_audit=bool(item.get("requiresManualAudit", False)),
                        error_details=item.get("errorDetails"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("rotation_journal_entry_invalid", key=key_name)
        return entries

    async def record(self, entry: InterruptedRotation) -> None:
        await asyncio.to_thread(self._record_sync, entry)

    async def clear(self, key_name: str) -> bool:
        return await asyncio.to_thread(self._clear_sync, key_name)

    def _load_sync(self) -> Dict[str, Dict[str, Any]]:
        if not self.journal_path.exists():
            return {}
        try:
            content = self.journal_path.read_text(encoding="utf-8")
            data = json.loads(content, object_hook=_revive_journal_dates) if content.strip() else {}
        except (OSError, json.JSONDecodeError):
            logger.warning("rotation_journal_unreadable", path=str(self.journal_path))
            return {}
        return data if isinstance(data, dict) else {}

    def _record_sync(self, entry: InterruptedRotation) -> None:
        data = self._load_sync()
        rendered = entry.to_dict(json_ready=True)
        rendered.pop("keyName", None)
        data[entry.key_name] = rendered
        self.journal_path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.journal_path, json.dumps(data, indent=2))

    def _clear_sync(self, key_name: str) -> bool:
        data = self._load_sync()
        if key_name not in data:
            return False
        del data[key_name]
        _atomic_write(self.journal_path, json.dumps(data, indent=2))
        return True


def _revive_journal_dates(obj: Dict[str, Any]) -> Dict[str, Any]:
    for name in ("startedAt", "updatedAt"):
        value = obj.get(name)
        if isinstance(value, str):
            parsed = parse_iso(value)
            if parsed is not None:
                obj[name] = parsed
    return obj


__all__ = [
    "DATE_FIELDS",
    "KeyMetadataStore",
    "RotationJournal",
    "create_default_metadata",
    "decode_metadata",
    "encode_metadata",
]
