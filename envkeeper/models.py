"""Data model for key lifecycle metadata and audit results.

Records are plain dataclasses with snake_case attributes.  ``to_dict`` renders
them with the camelCase field names used in the persisted metadata file
(``keyName``, ``lastRotatedAt``...), keeping ``datetime`` values intact unless
``json_ready`` is requested.  ``from_dict`` accepts the same shape with dates
already revived to ``datetime`` objects, which is what
:class:`envkeeper.metadata_store.KeyMetadataStore` hands over after decoding.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence, Union

from envkeeper.time_utils import to_iso


class KeyStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"


class EventType(str, Enum):
    CREATED = "created"
    ROTATED = "rotated"
    ACCESSED = "accessed"
    WARNING_ISSUED = "warning_issued"
    EXPIRED = "expired"
    HEALTH_CHECK = "health_check"


class EventSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RotationReason(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    EXPIRED = "expired"
    SECURITY_BREACH = "security_breach"
    COMPROMISED = "compromised"


class CheckSource(str, Enum):
    STARTUP = "startup"
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    API = "api"


class SystemHealth(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditFingerprint(str):
    """Non-cryptographic content fingerprint of key material.

    Only used to tell whether old and new key material differ in audit
    records.  It is trivially reversible by brute force and must never be
    used as a security control.
    """


MetadataValue = Union[str, int, float, bool, List[str]]
AuditMetadata = Dict[str, MetadataValue]


def coerce_audit_metadata(values: Optional[Mapping[str, Any]]) -> Optional[AuditMetadata]:
    """Return ``values`` restricted to the serialisable audit metadata value types."""

    if not values:
        return None
    coerced: AuditMetadata = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, Enum):
            coerced[str(key)] = str(value.value)
        elif isinstance(value, (bool, int, float, str)):
            coerced[str(key)] = value
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = sorted(value) if isinstance(value, (set, frozenset)) else value
            coerced[str(key)] = [str(item) for item in items]
        else:
            coerced[str(key)] = str(value)
    return coerced or None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _render(value: Any, json_ready: bool) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            _camel(f.name): _render(getattr(value, f.name), json_ready)
            for f in dataclasses.fields(value)
            if getattr(value, f.name) is not None
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value) if json_ready else value
    if isinstance(value, Mapping):
        return {str(k): _render(v, json_ready) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_render(item, json_ready) for item in value]
    return value


def to_record(value: Any, *, json_ready: bool = False) -> Any:
    """Render dataclasses, enums and containers as plain camelCase structures."""

    return _render(value, json_ready)


class _Record:
    def to_dict(self, *, json_ready: bool = False) -> Dict[str, Any]:
        return to_record(self, json_ready=json_ready)


@dataclass
class RotationConfig(_Record):
    max_age_in_days: float
    warning_threshold_in_days: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RotationConfig":
        return cls(
            max_age_in_days=data["maxAgeInDays"],
            warning_threshold_in_days=data["warningThresholdInDays"],
        )


@dataclass
class AuditEvent(_Record):
    timestamp: datetime
    event_type: EventType
    severity: EventSeverity
    source: str
    details: str
    metadata: Optional[AuditMetadata] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditEvent":
        return cls(
            timestamp=data["timestamp"],
            event_type=EventType(data["eventType"]),
            severity=EventSeverity(data["severity"]),
            source=data["source"],
            details=data["details"],
            metadata=coerce_audit_metadata(data.get("metadata")),
        )


@dataclass
class RotationEvent(_Record):
    timestamp: datetime
    reason: RotationReason
    affected_environments: List[str] = field(default_factory=list)
    affected_variables: List[str] = field(default_factory=list)
    success: bool = False
    old_key_hash: Optional[str] = None
    new_key_hash: Optional[str] = None
    error_details: Optional[str] = None
    override_mode: Optional[bool] = None

    @property
    def is_bootstrap(self) -> bool:
        return self.success and not self.affected_environments and not self.affected_variables

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RotationEvent":
        return cls(
            timestamp=data["timestamp"],
            reason=RotationReason(data["reason"]),
            affected_environments=list(data.get("affectedEnvironments") or []),
            affected_variables=list(data.get("affectedVariables") or []),
            success=bool(data["success"]),
            old_key_hash=data.get("oldKeyHash"),
            new_key_hash=data.get("newKeyHash"),
            error_details=data.get("errorDetails"),
            override_mode=data.get("overrideMode"),
        )


@dataclass
class HealthCheckEvent(_Record):
    timestamp: datetime
    age_in_days: int
    days_until_expiry: int
    status: KeyStatus
    check_source: CheckSource
    recommendations: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HealthCheckEvent":
        recommendations = data.get("recommendations")
        return cls(
            timestamp=data["timestamp"],
            age_in_days=data["ageInDays"],
            days_until_expiry=data["daysUntilExpiry"],
            status=KeyStatus(data["status"]),
            check_source=CheckSource(data["checkSource"]),
            recommendations=list(recommendations) if recommendations is not None else None,
        )


@dataclass
class AuditTrail(_Record):
    audit_events: List[AuditEvent] = field(default_factory=list)
    rotation_history: List[RotationEvent] = field(default_factory=list)
    health_check_history: List[HealthCheckEvent] = field(default_factory=list)
    last_scheduled_check: Optional[datetime] = None
    last_health_check: Optional[datetime] = None
    last_warning_issued: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditTrail":
        return cls(
            audit_events=[AuditEvent.from_dict(item) for item in data.get("auditEvents", [])],
            rotation_history=[
                RotationEvent.from_dict(item) for item in data.get("rotationHistory", [])
            ],
            health_check_history=[
                HealthCheckEvent.from_dict(item) for item in data.get("healthCheckHistory", [])
            ],
            last_scheduled_check=data.get("lastScheduledCheck"),
            last_health_check=data.get("lastHealthCheck"),
            last_warning_issued=data.get("lastWarningIssued"),
        )


@dataclass
class UsageTracking(_Record):
    environments_used_in: List[str] = field(default_factory=list)
    dependent_variables: List[str] = field(default_factory=list)
    last_accessed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UsageTracking":
        return cls(
            environments_used_in=list(data.get("environmentsUsedIn", [])),
            dependent_variables=list(data.get("dependentVariables", [])),
            last_accessed_at=data.get("lastAccessedAt"),
        )


@dataclass
class StatusTracking(_Record):
    current_status: KeyStatus
    last_status_change: datetime

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StatusTracking":
        return cls(
            current_status=KeyStatus(data["currentStatus"]),
            last_status_change=data["lastStatusChange"],
        )


@dataclass
class KeyMetadata(_Record):
    key_name: str
    created_at: datetime
    rotation_count: int
    rotation_config: RotationConfig
    audit_trail: AuditTrail
    usage_tracking: UsageTracking
    status_tracking: StatusTracking
    last_rotated_at: Optional[datetime] = None

    @property
    def reference_date(self) -> datetime:
        """Date the key age is measured from: the last rotation, else creation."""

        return self.last_rotated_at or self.created_at

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "KeyMetadata":
        return cls(
            key_name=data["keyName"],
            created_at=data["createdAt"],
            rotation_count=int(data["rotationCount"]),
            rotation_config=RotationConfig.from_dict(data["rotationConfig"]),
            audit_trail=AuditTrail.from_dict(data["auditTrail"]),
            usage_tracking=UsageTracking.from_dict(data["usageTracking"]),
            status_tracking=StatusTracking.from_dict(data["statusTracking"]),
            last_rotated_at=data.get("lastRotatedAt"),
        )


@dataclass
class RotationResult(_Record):
    success: bool
    re_encrypted_count: int
    affected_files: List[str]
    error_details: Optional[str] = None


@dataclass
class KeyRotationStatus(_Record):
    needs_rotation: bool
    needs_warning: bool
    age_in_days: int
    days_until_rotation: float


class RotationCandidates(NamedTuple):
    keys_needing_rotation: List[str]
    keys_needing_warning: List[str]


@dataclass
class KeyMetrics(_Record):
    average_key_age: float = 0.0
    oldest_key_age: int = 0
    newest_key_age: int = 0


@dataclass
class AuditSummary(_Record):
    total_keys: int
    healthy_keys: int
    warning_keys: int
    critical_keys: int
    expired_keys: int
    average_key_age: float
    oldest_key_age: int
    newest_key_age: int
    total_audit_events: int
    total_rotations: int
    current_status: SystemHealth
    last_rotation: Optional[datetime] = None
    last_health_check: Optional[datetime] = None
    last_access: Optional[datetime] = None


@dataclass
class KeyAuditSummary(_Record):
    total_rotations: int
    total_audit_events: int
    current_status: SystemHealth
    last_rotation: Optional[datetime] = None
    last_health_check: Optional[datetime] = None
    last_access: Optional[datetime] = None


@dataclass
class KeyInfo(_Record):
    exists: bool
    metadata: Optional[KeyMetadata] = None
    rotation_status: Optional[KeyRotationStatus] = None
    audit_summary: Optional[Union[KeyAuditSummary, AuditSummary]] = None


@dataclass
class SystemAuditResult(_Record):
    system_health: SystemHealth
    keys_needing_rotation: List[str]
    keys_needing_warning: List[str]
    expired_keys: List[str]
    audit_summary: AuditSummary
    recommendations: List[str]


@dataclass
class InterruptedRotation(_Record):
    key_name: str
    environment_file: str
    reason: RotationReason
    state: str
    started_at: datetime
    updated_at: datetime
    requires_manual_audit: bool = False
    error_details: Optional[str] = None


@dataclass
class StartupSecurityCheckResult(_Record):
    passed: bool
    system_health: SystemHealth
    critical_keys: List[str]
    warning_keys: List[str]
    expired_keys: List[str]
    audit_summary: AuditSummary
    recommendations: List[str]
    interrupted_rotations: List[InterruptedRotation] = field(default_factory=list)


def unique_strings(*groups: Sequence[str]) -> List[str]:
    """Merge string collections, de-duplicating while keeping first-seen order."""

    seen: Dict[str, None] = {}
    for group in groups:
        for item in group:
            seen.setdefault(item, None)
    return list(seen)


__all__ = [
    "AuditEvent",
    "AuditFingerprint",
    "AuditMetadata",
    "AuditSummary",
    "AuditTrail",
    "CheckSource",
    "EventSeverity",
    "EventType",
    "HealthCheckEvent",
    "InterruptedRotation",
    "KeyAuditSummary",
    "KeyInfo",
    "KeyMetadata",
    "KeyMetrics",
    "KeyRotationStatus",
    "KeyStatus",
    "RotationCandidates",
    "RotationConfig",
    "RotationEvent",
    "RotationReason",
    "RotationResult",
    "StartupSecurityCheckResult",
    "StatusTracking",
    "SystemAuditResult",
    "SystemHealth",
    "UsageTracking",
    "coerce_audit_metadata",
    "to_record",
    "unique_strings",
]
