"""Structural validation of decoded key metadata.

The functions here accept arbitrary decoded JSON (with date fields already
revived to ``datetime``) and answer whether it can be trusted as a mapping of
key name to key metadata.  They never raise; failures are logged and reported
as ``False``.  A single malformed key invalidates the whole record set.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Mapping

import structlog

from envkeeper.models import CheckSource, EventSeverity, EventType, KeyStatus, RotationReason

logger = structlog.get_logger(__name__)

VALID_STATUSES = frozenset(item.value for item in KeyStatus)
VALID_EVENT_TYPES = frozenset(item.value for item in EventType)
VALID_SEVERITIES = frozenset(item.value for item in EventSeverity)
VALID_ROTATION_REASONS = frozenset(item.value for item in RotationReason)
VALID_CHECK_SOURCES = frozenset(item.value for item in CheckSource)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and not (isinstance(value, float) and math.isnan(value))
    )


def _is_non_negative_number(value: Any) -> bool:
    return _is_number(value) and value >= 0


def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_date(value: Any) -> bool:
    return isinstance(value, datetime)


def _is_optional_date(record: Mapping[str, Any], name: str) -> bool:
    return record.get(name) is None or _is_date(record.get(name))


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def _is_object(value: Any) -> bool:
    return isinstance(value, Mapping)


def validate_metadata_record(metadata: Any) -> bool:
    """Return ``True`` when ``metadata`` maps key names to well-formed records."""

    if not _is_object(metadata):
        logger.warning("metadata_record_not_object", type=type(metadata).__name__)
        return False
    for key_name, key_metadata in metadata.items():
        if not validate_key_metadata(key_metadata):
            logger.warning("metadata_record_invalid_key", key=key_name)
            return False
    return True


def validate_key_metadata(metadata: Any) -> bool:
    """Return ``True`` when ``metadata`` is a single well-formed key record."""

    if not _is_object(metadata):
        logger.error("metadata_invalid", reason="metadata is not an object")
        return False
    return (
        _validate_basic_structure(metadata)
        and validate_rotation_config_record(metadata.get("rotationConfig"))
        and _validate_audit_trail(metadata.get("auditTrail"))
        and _validate_usage_tracking(metadata.get("usageTracking"))
        and _validate_status_tracking(metadata.get("statusTracking"))
    )


def _validate_basic_structure(metadata: Mapping[str, Any]) -> bool:
    if not _is_non_empty_string(metadata.get("keyName")):
        logger.error("metadata_invalid", reason="keyName must be a non-empty string")
        return False
    if not _is_date(metadata.get("createdAt")):
        logger.error("metadata_invalid", reason="createdAt must be a valid date")
        return False
    rotation_count = metadata.get("rotationCount")
    if not (isinstance(rotation_count, int) and not isinstance(rotation_count, bool) and rotation_count >= 0):
        logger.error("metadata_invalid", reason="rotationCount must be a non-negative integer")
        return False
    if not _is_optional_date(metadata, "lastRotatedAt"):
        logger.error("metadata_invalid", reason="lastRotatedAt must be a date when provided")
        return False
    return True


def validate_rotation_config_record(config: Any) -> bool:
    """Check ``maxAgeInDays > 0``, ``warningThresholdInDays >= 0`` and their ordering."""

    if not _is_object(config):
        logger.error("metadata_invalid", reason="rotationConfig must be an object")
        return False
    max_age = config.get("maxAgeInDays")
    warning = config.get("warningThresholdInDays")
    if not _is_number(max_age) or max_age <= 0:
        logger.error("metadata_invalid", reason="maxAgeInDays must be a positive number")
        return False
    if not _is_non_negative_number(warning):
        logger.error("metadata_invalid", reason="warningThresholdInDays must be a non-negative number")
        return False
    if warning >= max_age:
        logger.error(
            "metadata_invalid",
            reason="warningThresholdInDays must be less than maxAgeInDays",
        )
        return False
    return True


def _validate_audit_trail(audit_trail: Any) -> bool:
    if not _is_object(audit_trail):
        logger.error("metadata_invalid", reason="auditTrail must be an object")
        return False
    for name in ("lastScheduledCheck", "lastHealthCheck", "lastWarningIssued"):
        if not _is_optional_date(audit_trail, name):
            logger.error("metadata_invalid", reason=f"{name} must be a date when provided")
            return False

    histories = (
        ("auditEvents", _validate_audit_event),
        ("rotationHistory", _validate_rotation_event),
        ("healthCheckHistory", _validate_health_check_event),
    )
    for name, check in histories:
        events = audit_trail.get(name)
        if not isinstance(events, list):
            logger.error("metadata_invalid", reason=f"auditTrail.{name} must be a list")
            return False
        for index, event in enumerate(events):
            if not check(event):
                logger.error("metadata_invalid", reason=f"invalid entry in {name}", index=index)
                return False
    return True


def _validate_usage_tracking(usage: Any) -> bool:
    if not _is_object(usage):
        logger.error("metadata_invalid", reason="usageTracking must be an object")
        return False
    if not _is_optional_date(usage, "lastAccessedAt"):
        logger.error("metadata_invalid", reason="lastAccessedAt must be a date when provided")
        return False
    if not _is_string_list(usage.get("environmentsUsedIn")):
        logger.error("metadata_invalid", reason="environmentsUsedIn must be a list of strings")
        return False
    if not _is_string_list(usage.get("dependentVariables")):
        logger.error("metadata_invalid", reason="dependentVariables must be a list of strings")
        return False
    return True


def _validate_status_tracking(status: Any) -> bool:
    if not _is_object(status):
        logger.error("metadata_invalid", reason="statusTracking must be an object")
        return False
    if status.get("currentStatus") not in VALID_STATUSES:
        logger.error(
            "metadata_invalid",
            reason=f"currentStatus must be one of: {', '.join(sorted(VALID_STATUSES))}",
        )
        return False
    if not _is_date(status.get("lastStatusChange")):
        logger.error("metadata_invalid", reason="lastStatusChange must be a valid date")
        return False
    return True


def _validate_audit_metadata_bag(bag: Any) -> bool:
    if bag is None:
        return True
    if not _is_object(bag):
        return False
    for value in bag.values():
        if isinstance(value, (str, bool)) or _is_number(value):
            continue
        if _is_string_list(value):
            continue
        return False
    return True


def _validate_audit_event(event: Any) -> bool:
    if not _is_object(event):
        return False
    return (
        _is_date(event.get("timestamp"))
        and event.get("eventType") in VALID_EVENT_TYPES
        and event.get("severity") in VALID_SEVERITIES
        and _is_non_empty_string(event.get("source"))
        and isinstance(event.get("details"), str)
        and _validate_audit_metadata_bag(event.get("metadata"))
    )


def _validate_rotation_event(event: Any) -> bool:
    if not _is_object(event):
        return False
    if not (
        _is_date(event.get("timestamp"))
        and event.get("reason") in VALID_ROTATION_REASONS
        and _is_string_list(event.get("affectedEnvironments"))
        and _is_string_list(event.get("affectedVariables"))
        and isinstance(event.get("success"), bool)
    ):
        return False
    for name in ("oldKeyHash", "newKeyHash", "errorDetails"):
        if event.get(name) is not None and not isinstance(event.get(name), str):
            return False
    override = event.get("overrideMode")
    return override is None or isinstance(override, bool)


def _validate_health_check_event(event: Any) -> bool:
    if not _is_object(event):
        return False
    recommendations = event.get("recommendations")
    return (
        _is_date(event.get("timestamp"))
        and _is_non_negative_number(event.get("ageInDays"))
        and _is_number(event.get("daysUntilExpiry"))
        and event.get("status") in VALID_STATUSES
        and event.get("checkSource") in VALID_CHECK_SOURCES
        and (recommendations is None or _is_string_list(recommendations))
    )


__all__ = [
    "validate_key_metadata",
    "validate_metadata_record",
    "validate_rotation_config_record",
]
