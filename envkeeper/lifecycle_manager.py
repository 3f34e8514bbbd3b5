"""Rotation policy evaluation and audit bookkeeping for named keys.

The manager never touches ciphertext.  It owns the arithmetic that decides
whether a key is healthy, due for a warning or overdue for rotation, and it
is the only writer of audit events, health checks and rotation history.

Bookkeeping writes (audit events, health checks, access records) are best
effort: a failure is logged and swallowed so it can never abort the
operation that triggered it.  Authoritative operations such as
:meth:`KeyLifecycleManager.store_base_environment_key` raise.
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog

from envkeeper.env_files import EnvironmentFileParser, EnvironmentSecretFileManager
from envkeeper.errors import KeyLifecycleError, RotationConfigError
from envkeeper.metadata_store import KeyMetadataStore, create_default_metadata
from envkeeper.models import (
    AuditEvent,
    AuditFingerprint,
    AuditSummary,
    CheckSource,
    EventSeverity,
    EventType,
    HealthCheckEvent,
    KeyAuditSummary,
    KeyInfo,
    KeyMetadata,
    KeyMetrics,
    KeyRotationStatus,
    KeyStatus,
    RotationCandidates,
    RotationConfig,
    RotationEvent,
    RotationReason,
    RotationResult,
    SystemAuditResult,
    SystemHealth,
    UsageTracking,
    coerce_audit_metadata,
    unique_strings,
)
from envkeeper.observability import sanitize_text
from envkeeper.settings import DEFAULT_MAX_AGE_DAYS, DEFAULT_WARNING_THRESHOLD_DAYS
from envkeeper.time_utils import Clock, age_in_days, utc_now, whole_days_since

logger = structlog.get_logger(__name__)

AUDIT_EVENT_LIMIT = 100
HEALTH_CHECK_LIMIT = 50
ROTATION_HEALTH_CHECK_LIMIT = 25
SYSTEM_KEY_NAME = "SYSTEM"
# Average key age above this share of the max age suggests shorter intervals.
ROTATION_INTERVAL_PRESSURE = 0.8

_KEY_STATUS_TO_HEALTH = {
    KeyStatus.HEALTHY: SystemHealth.HEALTHY,
    KeyStatus.WARNING: SystemHealth.WARNING,
    KeyStatus.CRITICAL: SystemHealth.CRITICAL,
    KeyStatus.EXPIRED: SystemHealth.CRITICAL,
}

_STATUS_DETAILS = {
    KeyStatus.HEALTHY: "Key is within safe rotation period.",
    KeyStatus.WARNING: "Key is approaching rotation threshold - consider rotating soon.",
    KeyStatus.CRITICAL: "Key operation failed or is in critical state.",
    KeyStatus.EXPIRED: "Key has exceeded maximum age and should be rotated immediately.",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def validate_rotation_config(config: Any) -> RotationConfig:
    """Return ``config`` unchanged or raise :class:`RotationConfigError`."""

    if not isinstance(config, RotationConfig):
        raise RotationConfigError("Invalid rotation config: config must be an object")
    if not _is_number(config.max_age_in_days) or config.max_age_in_days <= 0:
        raise RotationConfigError("Invalid rotation config: maxAgeInDays must be a positive number")
    if not _is_number(config.warning_threshold_in_days) or config.warning_threshold_in_days < 0:
        raise RotationConfigError(
            "Invalid rotation config: warningThresholdInDays must be a non-negative number"
        )
    if config.warning_threshold_in_days >= config.max_age_in_days:
        raise RotationConfigError(
            "Invalid rotation config: warningThresholdInDays must be less than maxAgeInDays"
        )
    return config


def hash_key(value: str) -> AuditFingerprint:
    """Return the 32-bit rolling hash of ``value`` as lowercase hex.

    This only tells old and new key material apart in audit records.  It is
    not a cryptographic digest.
    """

    acc = 0
    encoded = value.encode("utf-16-le")
    for index in range(0, len(encoded), 2):
        code_unit = encoded[index] | (encoded[index + 1] << 8)
        acc = ((acc << 5) - acc + code_unit) & 0xFFFFFFFF
    if acc & 0x80000000:
        acc -= 1 << 32
    return AuditFingerprint(format(abs(acc), "x"))


def _append_capped(items: List[Any], item: Any, limit: int) -> List[Any]:
    items.append(item)
    if len(items) > limit:
        del items[: len(items) - limit]
    return items


def _latest(values: Iterable[Optional[datetime]]) -> Optional[datetime]:
    present = [value for value in values if value is not None]
    return max(present) if present else None


class KeyLifecycleManager:
    """Evaluate rotation policy and keep each key's audit trail."""

    def __init__(
        self,
        secret_files: EnvironmentSecretFileManager,
        store: KeyMetadataStore,
        rotation_config: Optional[RotationConfig] = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.secret_files = secret_files
        self.store = store
        self.rotation_config = validate_rotation_config(
            rotation_config
            or RotationConfig(
                max_age_in_days=DEFAULT_MAX_AGE_DAYS,
                warning_threshold_in_days=DEFAULT_WARNING_THRESHOLD_DAYS,
            )
        )
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------
    def validate_rotation_config(self, config: Any) -> RotationConfig:
        return validate_rotation_config(config)

    def hash_key(self, value: str) -> AuditFingerprint:
        return hash_key(value)

    def key_age(self, metadata: KeyMetadata) -> int:
        return age_in_days(metadata.reference_date, self.now())

    def _validated_config(self, key_name: str, metadata: KeyMetadata) -> RotationConfig:
        try:
            return validate_rotation_config(metadata.rotation_config)
        except RotationConfigError as exc:
            logger.warning("rotation_config_invalid_using_defaults", key=key_name, error=str(exc))
            return self.rotation_config

    def _rotation_status(self, age: int, config: RotationConfig) -> KeyRotationStatus:
        days_until_rotation = config.max_age_in_days - age
        needs_rotation = age >= config.max_age_in_days
        needs_warning = not needs_rotation and days_until_rotation <= config.warning_threshold_in_days
        return KeyRotationStatus(
            needs_rotation=needs_rotation,
            needs_warning=needs_warning,
            age_in_days=age,
            days_until_rotation=max(0, days_until_rotation),
        )

    def derive_health_status(self, metadata: KeyMetadata, success: bool) -> KeyStatus:
        """Classify a key after an operation on it succeeded or failed."""

        if not success:
            return KeyStatus.CRITICAL
        config = self._validated_config(metadata.key_name, metadata)
        age = self.key_age(metadata)
        warning_age = config.max_age_in_days - config.warning_threshold_in_days
        if age >= config.max_age_in_days:
            return KeyStatus.EXPIRED
        if age >= warning_age:
            return KeyStatus.WARNING
        if whole_days_since(metadata.reference_date, self.now()) >= warning_age:
            return KeyStatus.WARNING
        return KeyStatus.HEALTHY

    def _update_status_if_changed(self, metadata: KeyMetadata, status: KeyStatus) -> None:
        tracking = metadata.status_tracking
        if tracking.current_status != status:
            logger.info(
                "key_status_changed",
                key=metadata.key_name,
                previous=tracking.current_status.value,
                current=status.value,
            )
            tracking.current_status = status
            tracking.last_status_change = self.now()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    async def _update_key(
        self, key_name: str, mutate: Callable[[KeyMetadata], None]
    ) -> Optional[KeyMetadata]:
        records = await self.store.read_all()
        metadata = records.get(key_name)
        if metadata is None:
            return None
        mutate(metadata)
        await self.store.write_all(records)
        return metadata

    def _new_audit_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        source: str,
        details: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> AuditEvent:
        return AuditEvent(
            timestamp=self.now(),
            event_type=event_type,
            severity=severity,
            source=source,
            details=details,
            metadata=coerce_audit_metadata(metadata),
        )

    # ------------------------------------------------------------------
    # Audit events and access tracking
    # ------------------------------------------------------------------
    async def record_audit_event(
        self,
        key_name: str,
        event_type: EventType,
        severity: EventSeverity,
        source: str,
        details: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Append an audit event to ``key_name``; unknown keys are ignored."""

        event = self._new_audit_event(event_type, severity, source, details, metadata)
        try:
            updated = await self._update_key(
                key_name,
                lambda record: _append_capped(record.audit_trail.audit_events, event, AUDIT_EVENT_LIMIT),
            )
        except KeyLifecycleError:
            logger.exception("audit_event_record_failed", key=key_name, event_type=event_type.value)
            return False
        return updated is not None

    async def record_key_access(self, key_name: str, source: str) -> bool:
        event = self._new_audit_event(
            EventType.ACCESSED, EventSeverity.INFO, source, f"Key accessed from {source}"
        )

        def mutate(record: KeyMetadata) -> None:
            record.usage_tracking.last_accessed_at = self.now()
            _append_capped(record.audit_trail.audit_events, event, AUDIT_EVENT_LIMIT)

        try:
            updated = await self._update_key(key_name, mutate)
        except KeyLifecycleError:
            logger.exception("key_access_record_failed", key=key_name)
            return False
        return updated is not None

    def update_usage_tracking(
        self,
        decrypted: Mapping[str, Mapping[str, Optional[str]]],
        existing: Optional[UsageTracking] = None,
    ) -> UsageTracking:
        """Merge environment files and variable names seen in ``decrypted``.

        ``decrypted`` maps an environment file to its ``{variable: value}``
        pairs; variables whose value is ``None`` are not counted.
        """

        environments = list(existing.environments_used_in) if existing else []
        variables = list(existing.dependent_variables) if existing else []
        for environment_file, values in decrypted.items():
            environments = unique_strings(environments, [environment_file])
            variables = unique_strings(
                variables, [name for name, value in values.items() if value is not None]
            )
        return UsageTracking(
            environments_used_in=environments,
            dependent_variables=variables,
            last_accessed_at=self.now(),
        )

    async def record_key_usage(
        self, key_name: str, environment_file: str, variables: Sequence[str]
    ) -> bool:
        """Persist that ``variables`` in ``environment_file`` depend on ``key_name``."""

        def mutate(record: KeyMetadata) -> None:
            record.usage_tracking = self.update_usage_tracking(
                {environment_file: {name: "" for name in variables}}, record.usage_tracking
            )

        try:
            updated = await self._update_key(key_name, mutate)
        except KeyLifecycleError:
            logger.exception("key_usage_record_failed", key=key_name)
            return False
        return updated is not None

    # ------------------------------------------------------------------
    # Rotation checks
    # ------------------------------------------------------------------
    async def check_key_rotation_status(
        self, key_name: str, source: CheckSource = CheckSource.MANUAL
    ) -> KeyRotationStatus:
        metadata = await self.store.get_key_metadata(key_name)
        if metadata is None:
            return KeyRotationStatus(
                needs_rotation=False,
                needs_warning=False,
                age_in_days=0,
                days_until_rotation=self.rotation_config.max_age_in_days,
            )

        config = self._validated_config(key_name, metadata)
        status = self._rotation_status(self.key_age(metadata), config)
        await self._record_rotation_check(key_name, status, source)
        return status

    async def _record_rotation_check(
        self, key_name: str, status: KeyRotationStatus, source: CheckSource
    ) -> None:
        recommendations: List[str] = []
        if status.needs_rotation:
            health = KeyStatus.CRITICAL
            recommendations.append("Immediate rotation required")
            event = self._new_audit_event(
                EventType.EXPIRED,
                EventSeverity.CRITICAL,
                "check_key_rotation_status",
                f"Key has expired and requires immediate rotation ({status.age_in_days} days old)",
            )
        elif status.needs_warning:
            health = KeyStatus.WARNING
            recommendations.append(f"Consider rotating within {status.days_until_rotation} days")
            event = self._new_audit_event(
                EventType.WARNING_ISSUED,
                EventSeverity.WARNING,
                "check_key_rotation_status",
                f"Key will expire in {status.days_until_rotation} days",
            )
        else:
            health = KeyStatus.HEALTHY
            event = None

        now = self.now()
        entry = HealthCheckEvent(
            timestamp=now,
            age_in_days=status.age_in_days,
            days_until_expiry=status.days_until_rotation,
            status=health,
            check_source=source,
            recommendations=recommendations or None,
        )

        def mutate(record: KeyMetadata) -> None:
            trail = record.audit_trail
            _append_capped(trail.health_check_history, entry, HEALTH_CHECK_LIMIT)
            trail.last_health_check = now
            if source is CheckSource.SCHEDULED:
                trail.last_scheduled_check = now
            if event is not None:
                _append_capped(trail.audit_events, event, AUDIT_EVENT_LIMIT)
            if status.needs_warning:
                trail.last_warning_issued = now
            self._update_status_if_changed(record, health)

        try:
            await self._update_key(key_name, mutate)
        except KeyLifecycleError:
            logger.exception("health_check_record_failed", key=key_name)
            return
        if recommendations:
            logger.info("health_check_recommendations", key=key_name, recommendations=recommendations)

    async def check_all_keys_for_rotation(self) -> RotationCandidates:
        records = await self.store.read_all()
        keys_needing_rotation: List[str] = []
        keys_needing_warning: List[str] = []
        for key_name in self._tracked_keys(records):
            status = await self.check_key_rotation_status(key_name, CheckSource.SCHEDULED)
            if status.needs_rotation:
                logger.critical(
                    "key_rotation_required", key=key_name, age_days=status.age_in_days
                )
                keys_needing_rotation.append(key_name)
            elif status.needs_warning:
                logger.warning(
                    "key_rotation_due_soon",
                    key=key_name,
                    age_days=status.age_in_days,
                    days_until_rotation=status.days_until_rotation,
                )
                keys_needing_warning.append(key_name)
        return RotationCandidates(keys_needing_rotation, keys_needing_warning)

    @staticmethod
    def _tracked_keys(records: Mapping[str, KeyMetadata]) -> List[str]:
        return [name for name in records if name != SYSTEM_KEY_NAME]

    # ------------------------------------------------------------------
    # Health check entries recorded around rotations
    # ------------------------------------------------------------------
    async def add_health_check_entry(
        self,
        key_name: str,
        success: bool,
        reason: RotationReason | str,
        result: Optional[RotationResult] = None,
    ) -> Optional[HealthCheckEvent]:
        """Record the health of ``key_name`` right after an operation on it."""

        reason_value = reason.value if isinstance(reason, RotationReason) else str(reason)
        captured: Dict[str, HealthCheckEvent] = {}

        def mutate(record: KeyMetadata) -> None:
            status = self.derive_health_status(record, success)
            config = self._validated_config(key_name, record)
            age = self.key_age(record)
            entry = HealthCheckEvent(
                timestamp=self.now(),
                age_in_days=age,
                days_until_expiry=max(0, config.max_age_in_days - age),
                status=status,
                check_source=_check_source_for(reason_value),
                recommendations=_recommendations_for(status, result),
            )
            _append_capped(record.audit_trail.health_check_history, entry, ROTATION_HEALTH_CHECK_LIMIT)
            record.audit_trail.last_health_check = entry.timestamp
            self._update_status_if_changed(record, status)
            if result is not None:
                _append_capped(
                    record.audit_trail.audit_events,
                    self._new_audit_event(
                        EventType.HEALTH_CHECK,
                        _severity_for(status),
                        "health-check-service",
                        _health_check_details(success, reason_value, status, result),
                        {
                            "reason": reason_value,
                            "success": success,
                            "healthStatus": status,
                            "keyAge": age,
                            "daysSinceLastRotation": whole_days_since(record.reference_date, self.now()),
                            "reEncryptedCount": result.re_encrypted_count,
                            "affectedFiles": result.affected_files,
                        },
                    ),
                    AUDIT_EVENT_LIMIT,
                )
            captured["entry"] = entry

        try:
            await self._update_key(key_name, mutate)
        except KeyLifecycleError:
            logger.exception("health_check_entry_failed", key=key_name)
            return None
        return captured.get("entry")

    # ------------------------------------------------------------------
    # Rotation history
    # ------------------------------------------------------------------
    async def update_audit_trail(
        self,
        key_name: str,
        reason: RotationReason,
        started_at: datetime,
        result: RotationResult,
        *,
        new_key_value: str,
        old_key_value: Optional[str] = None,
        should_rotate_key: bool = False,
        error: Optional[BaseException] = None,
        processed_variables: Optional[Sequence[str]] = None,
    ) -> bool:
        """Append a rotation event and, on success, merge what the rotation touched."""

        variables = list(processed_variables or [])
        event = RotationEvent(
            timestamp=started_at,
            reason=reason,
            affected_environments=list(result.affected_files) if result.success else [],
            affected_variables=variables,
            success=result.success,
            old_key_hash=hash_key(old_key_value) if old_key_value else None,
            new_key_hash=hash_key(new_key_value),
            error_details=sanitize_text(error) if error is not None else None,
            override_mode=should_rotate_key,
        )

        def mutate(record: KeyMetadata) -> None:
            history = record.audit_trail.rotation_history
            bootstrap = min(
                (entry for entry in history if entry.is_bootstrap),
                key=lambda entry: entry.timestamp,
                default=None,
            )
            history.append(event)
            if not result.success:
                return
            usage = record.usage_tracking
            usage.environments_used_in = unique_strings(usage.environments_used_in, result.affected_files)
            usage.dependent_variables = unique_strings(usage.dependent_variables, variables)
            usage.last_accessed_at = self.now()
            if bootstrap is not None and variables:
                bootstrap.affected_environments = list(result.affected_files)
                bootstrap.affected_variables = list(variables)
                logger.info("bootstrap_rotation_entry_backfilled", key=key_name)

        try:
            updated = await self._update_key(key_name, mutate)
        except KeyLifecycleError:
            logger.exception("audit_trail_update_failed", key=key_name)
            return False
        if updated is None:
            logger.warning("audit_trail_key_missing", key=key_name)
            return False

        if result.success:
            await self.record_audit_event(
                key_name,
                EventType.ROTATED,
                EventSeverity.INFO,
                "rotate_key_with_audit",
                (
                    f"Key rotated successfully. Reason: {reason.value}. "
                    f"Re-encrypted {result.re_encrypted_count} variables: {', '.join(variables)}. "
                    f"Override mode: {should_rotate_key}"
                ),
                {
                    "reason": reason,
                    "affectedEnvironments": result.affected_files,
                    "reEncryptedCount": result.re_encrypted_count,
                    "rotationCount": updated.rotation_count,
                    "overrideMode": should_rotate_key,
                    "affectedVariables": variables,
                },
            )
        return True

    # ------------------------------------------------------------------
    # Key provisioning
    # ------------------------------------------------------------------
    async def store_base_environment_key(
        self,
        key_file: os.PathLike[str] | str,
        key_name: str,
        key_value: str,
        custom_max_age: Optional[float] = None,
        should_rotate_key: bool = False,
        environments_used_in: Sequence[str] = (),
        dependent_variables: Sequence[str] = (),
    ) -> bool:
        """Write ``key_name`` to the secret file and (re)create its metadata.

        Returns ``False`` without touching anything when the key already
        exists and ``should_rotate_key`` is not set.
        """

        content = await self.secret_files.get_or_create_base_env_file_content(key_file)
        lines = content.splitlines()
        rotated_in_place = key_name in EnvironmentFileParser.extract_variables(lines)
        if rotated_in_place and not should_rotate_key:
            logger.info(
                "secret_key_exists",
                key=key_name,
                hint="delete it or set should_rotate_key to regenerate",
            )
            return False

        config = validate_rotation_config(
            RotationConfig(
                max_age_in_days=custom_max_age or self.rotation_config.max_age_in_days,
                warning_threshold_in_days=self.rotation_config.warning_threshold_in_days,
            )
        )

        updated_lines = EnvironmentFileParser.update_lines(lines, key_name, key_value)
        await self.secret_files.write_base_env_file(key_file, "\n".join(updated_lines) + "\n")

        records = await self.store.read_all()
        now = self.now()
        existing = records.get(key_name)
        if rotated_in_place and existing is not None:
            existing.rotation_count += 1
            existing.last_rotated_at = now
            existing.rotation_config = config
            existing.usage_tracking.environments_used_in = unique_strings(
                existing.usage_tracking.environments_used_in, environments_used_in
            )
            existing.usage_tracking.dependent_variables = unique_strings(
                existing.usage_tracking.dependent_variables, dependent_variables
            )
            self._update_status_if_changed(existing, KeyStatus.HEALTHY)
            records[key_name] = existing
        else:
            record = create_default_metadata(key_name, now=now, rotation_config=config)
            record.usage_tracking.environments_used_in = unique_strings(environments_used_in)
            record.usage_tracking.dependent_variables = unique_strings(dependent_variables)
            if rotated_in_place:
                record.rotation_count = 1
                record.last_rotated_at = now
            record.audit_trail.rotation_history.append(
                RotationEvent(
                    timestamp=now,
                    reason=RotationReason.MANUAL,
                    success=True,
                    new_key_hash=hash_key(key_value),
                )
            )
            records[key_name] = record
        await self.store.write_all(records)

        operation = EventType.ROTATED if rotated_in_place else EventType.CREATED
        await self.record_audit_event(
            key_name,
            operation,
            EventSeverity.INFO,
            "store_base_environment_key",
            f"Secret key {operation.value} with {config.max_age_in_days:g}-day rotation period",
            {
                "initialMaxAge": config.max_age_in_days,
                "environmentsUsedIn": list(environments_used_in),
                "dependentVariables": list(dependent_variables),
            },
        )
        logger.info("secret_key_stored", key=key_name, operation=operation.value)
        return True

    # ------------------------------------------------------------------
    # Key information
    # ------------------------------------------------------------------
    async def get_key_info(self, key_name: str) -> KeyInfo:
        metadata = await self.store.get_key_metadata(key_name)
        if metadata is None:
            return KeyInfo(exists=False)
        self._validated_config(key_name, metadata)
        rotation_status = await self.check_key_rotation_status(key_name, CheckSource.API)
        refreshed = await self.store.get_key_metadata(key_name)
        return KeyInfo(exists=True, metadata=refreshed or metadata, rotation_status=rotation_status)

    async def get_comprehensive_key_info(self, key_name: str) -> KeyInfo:
        info = await self.get_key_info(key_name)
        if not info.exists or info.metadata is None:
            return info
        metadata = info.metadata
        info.audit_summary = KeyAuditSummary(
            total_rotations=metadata.rotation_count,
            total_audit_events=len(metadata.audit_trail.audit_events),
            current_status=_KEY_STATUS_TO_HEALTH[metadata.status_tracking.current_status],
            last_rotation=metadata.last_rotated_at,
            last_health_check=metadata.audit_trail.last_health_check,
            last_access=metadata.usage_tracking.last_accessed_at,
        )
        return info

    # ------------------------------------------------------------------
    # System audit
    # ------------------------------------------------------------------
    async def perform_comprehensive_audit(self) -> SystemAuditResult:
        candidates = await self.check_all_keys_for_rotation()
        records = await self.store.read_all()
        keys = self._tracked_keys(records)

        expired_keys = [
            name
            for name in keys
            if self.key_age(records[name]) >= self._validated_config(name, records[name]).max_age_in_days
        ]
        metrics = self._key_metrics([records[name] for name in keys])
        critical = len(candidates.keys_needing_rotation)
        warning = len(candidates.keys_needing_warning)
        system_health = _system_health(critical, warning)

        recommendations: List[str] = []
        if critical:
            recommendations.append(f"{critical} key(s) require immediate rotation")
        if warning:
            recommendations.append(f"{warning} key(s) should be rotated soon")
        if metrics.average_key_age > self.rotation_config.max_age_in_days * ROTATION_INTERVAL_PRESSURE:
            recommendations.append("Consider reducing key rotation intervals")

        tracked = [records[name] for name in keys]
        summary = AuditSummary(
            total_keys=len(keys),
            healthy_keys=len(keys) - critical - warning,
            warning_keys=warning,
            critical_keys=critical,
            expired_keys=len(expired_keys),
            average_key_age=round(metrics.average_key_age, 2),
            oldest_key_age=metrics.oldest_key_age,
            newest_key_age=metrics.newest_key_age,
            total_audit_events=sum(len(item.audit_trail.audit_events) for item in tracked),
            total_rotations=sum(item.rotation_count for item in tracked),
            current_status=system_health,
            last_rotation=_latest(item.last_rotated_at for item in tracked),
            last_health_check=_latest(item.audit_trail.last_health_check for item in tracked),
            last_access=_latest(item.usage_tracking.last_accessed_at for item in tracked),
        )
        logger.info(
            "system_audit_completed",
            health=system_health.value,
            total_keys=summary.total_keys,
            critical=critical,
            warning=warning,
        )
        return SystemAuditResult(
            system_health=system_health,
            keys_needing_rotation=candidates.keys_needing_rotation,
            keys_needing_warning=candidates.keys_needing_warning,
            expired_keys=expired_keys,
            audit_summary=summary,
            recommendations=recommendations,
        )

    def _key_metrics(self, records: Sequence[KeyMetadata]) -> KeyMetrics:
        if not records:
            return KeyMetrics()
        ages = [self.key_age(record) for record in records]
        return KeyMetrics(
            average_key_age=sum(ages) / len(ages),
            oldest_key_age=max(ages),
            newest_key_age=min(ages),
        )


def _system_health(critical: int, warning: int) -> SystemHealth:
    if critical > 0:
        return SystemHealth.CRITICAL
    if warning > 0:
        return SystemHealth.WARNING
    return SystemHealth.HEALTHY


def _check_source_for(reason: str) -> CheckSource:
    if reason == CheckSource.MANUAL.value:
        return CheckSource.MANUAL
    if reason == CheckSource.SCHEDULED.value:
        return CheckSource.SCHEDULED
    return CheckSource.API


def _severity_for(status: KeyStatus) -> EventSeverity:
    if status is KeyStatus.CRITICAL:
        return EventSeverity.CRITICAL
    if status is KeyStatus.WARNING:
        return EventSeverity.WARNING
    return EventSeverity.INFO


def _recommendations_for(status: KeyStatus, result: Optional[RotationResult]) -> Optional[List[str]]:
    recommendations: List[str] = []
    if status is KeyStatus.WARNING:
        recommendations.append("Consider rotating this key soon")
    elif status is KeyStatus.CRITICAL:
        recommendations.append("Key rotation is urgently needed")
    elif status is KeyStatus.EXPIRED:
        recommendations.append("Key has expired and should be rotated immediately")
    if result is not None and not result.success:
        recommendations.append("Previous rotation failed - investigate and retry")
    return recommendations or None


def _health_check_details(
    success: bool, reason: str, status: KeyStatus, result: Optional[RotationResult]
) -> str:
    if not success:
        return f"Key operation failed during {reason} operation. Status: {status.value}"
    details = f"Key operation completed successfully. Status: {status.value}."
    if result is not None:
        details += (
            f" Re-encrypted {result.re_encrypted_count} variables across "
            f"{len(result.affected_files)} files."
        )
    return f"{details} {_STATUS_DETAILS[status]}"


__all__ = [
    "AUDIT_EVENT_LIMIT",
    "HEALTH_CHECK_LIMIT",
    "ROTATION_HEALTH_CHECK_LIMIT",
    "SYSTEM_KEY_NAME",
    "KeyLifecycleManager",
    "hash_key",
    "validate_rotation_config",
]
