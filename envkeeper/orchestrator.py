"""Use-case facade over the key lifecycle components."""

from __future__ import annotations

from typing import List, Optional, Sequence

import structlog

from envkeeper.encryption import CryptoService, EncryptionManager, generate_secret_key
from envkeeper.env_files import EnvironmentFileParser, EnvironmentSecretFileManager
from envkeeper.lifecycle_manager import KeyLifecycleManager
from envkeeper.lifecycle_service import KeyLifecycleService
from envkeeper.metadata_store import KeyMetadataStore, RotationJournal
from envkeeper.models import (
    AuditSummary,
    CheckSource,
    EventSeverity,
    EventType,
    InterruptedRotation,
    KeyInfo,
    KeyRotationStatus,
    RotationConfig,
    RotationReason,
    RotationResult,
    StartupSecurityCheckResult,
    SystemAuditResult,
    SystemHealth,
)
from envkeeper.settings import KeyLifecycleSettings, get_settings
from envkeeper.time_utils import Clock, utc_now

logger = structlog.get_logger(__name__)


class CryptoOrchestrator:
    """Compose the store, manager and service into the supported operations."""

    def __init__(
        self,
        manager: KeyLifecycleManager,
        encryption_manager: EncryptionManager,
        service: KeyLifecycleService,
        *,
        key_file: str,
    ) -> None:
        self.manager = manager
        self.encryption_manager = encryption_manager
        self.service = service
        self.key_file = key_file

    async def generate_rotatable_secret_key(
        self,
        key_name: str,
        secret_key: Optional[str] = None,
        max_age_in_days: Optional[float] = None,
        should_rotate_key: bool = False,
        key_file: Optional[str] = None,
    ) -> bool:
        """Store ``secret_key`` (freshly generated when omitted) under ``key_name``."""

        if secret_key is not None and not secret_key.strip():
            raise ValueError("Secret key cannot be empty")
        return await self.manager.store_base_environment_key(
            key_file or self.key_file,
            key_name,
            secret_key or generate_secret_key(),
            custom_max_age=max_age_in_days,
            should_rotate_key=should_rotate_key,
        )

    async def encrypt_environment_variables(
        self,
        environment_file: str,
        key_name: str,
        variables: Optional[Sequence[str]] = None,
    ) -> List[str]:
        encrypted = await self.encryption_manager.encrypt_and_update_environment_variables(
            environment_file, key_name, variables, key_file=self.key_file
        )
        if encrypted:
            await self.manager.record_key_usage(key_name, environment_file, encrypted)
        return encrypted

    async def rotate_key_and_re_encrypt(
        self,
        key_name: str,
        environment_file: str,
        reason: RotationReason = RotationReason.MANUAL,
        new_key_value: Optional[str] = None,
        custom_max_age: Optional[float] = None,
        should_rotate_key: bool = False,
    ) -> RotationResult:
        return await self.service.rotate_key_with_audit(
            self.key_file,
            key_name,
            new_key_value or generate_secret_key(),
            environment_file,
            reason,
            custom_max_age=custom_max_age,
            should_rotate_key=should_rotate_key,
        )

    async def get_key_information(self, key_name: str, include_audit: bool = True) -> KeyInfo:
        if not include_audit:
            return await self.manager.get_key_info(key_name)

        info = await self.manager.get_comprehensive_key_info(key_name)
        status = info.rotation_status
        if not info.exists or status is None or info.audit_summary is None:
            return info
        key_summary = info.audit_summary
        info.audit_summary = AuditSummary(
            total_keys=1,
            healthy_keys=0 if status.needs_rotation or status.needs_warning else 1,
            warning_keys=1 if status.needs_warning else 0,
            critical_keys=1 if status.needs_rotation else 0,
            expired_keys=1 if status.needs_rotation else 0,
            average_key_age=status.age_in_days,
            oldest_key_age=status.age_in_days,
            newest_key_age=status.age_in_days,
            total_audit_events=key_summary.total_audit_events,
            total_rotations=key_summary.total_rotations,
            current_status=key_summary.current_status,
            last_rotation=key_summary.last_rotation,
            last_health_check=key_summary.last_health_check,
            last_access=key_summary.last_access,
        )
        return info

    async def perform_system_audit(self) -> SystemAuditResult:
        return await self.manager.perform_comprehensive_audit()

    async def perform_startup_security_check(self) -> StartupSecurityCheckResult:
        audit = await self.perform_system_audit()
        interrupted = await self.service.interrupted_rotations()
        recommendations = list(audit.recommendations)
        for entry in interrupted:
            await self._flag_interrupted_rotation(entry)
        if interrupted:
            recommendations.append(
                f"{len(interrupted)} key(s) have interrupted rotations requiring manual audit"
            )

        passed = audit.system_health is not SystemHealth.CRITICAL
        if not passed:
            logger.error(
                "startup_security_check_failed",
                health=audit.system_health.value,
                keys_needing_rotation=audit.keys_needing_rotation,
            )
        if audit.keys_needing_warning:
            logger.warning("startup_keys_due_soon", keys=audit.keys_needing_warning)
        if passed and audit.system_health is SystemHealth.HEALTHY and not interrupted:
            logger.info("startup_security_check_passed")

        return StartupSecurityCheckResult(
            passed=passed,
            system_health=audit.system_health,
            critical_keys=audit.keys_needing_rotation,
            warning_keys=audit.keys_needing_warning,
            expired_keys=audit.expired_keys,
            audit_summary=audit.audit_summary,
            recommendations=recommendations,
            interrupted_rotations=interrupted,
        )

    async def _flag_interrupted_rotation(self, entry: InterruptedRotation) -> None:
        logger.error(
            "interrupted_rotation_detected",
            key=entry.key_name,
            environment=entry.environment_file,
            state=entry.state,
            requires_manual_audit=entry.requires_manual_audit,
        )
        await self.manager.record_audit_event(
            entry.key_name,
            EventType.HEALTH_CHECK,
            EventSeverity.CRITICAL,
            "startup_security_check",
            (
                f"Rotation for environment {entry.environment_file} was interrupted "
                f"in state {entry.state}; manual audit required"
            ),
            {
                "state": entry.state,
                "reason": entry.reason,
                "environmentFile": entry.environment_file,
                "requiresManualAudit": entry.requires_manual_audit,
            },
        )

    async def acknowledge_interrupted_rotation(self, key_name: str) -> bool:
        return await self.service.acknowledge_interrupted_rotation(key_name)

    async def check_key_rotation_status(self, key_name: str) -> KeyRotationStatus:
        return await self.manager.check_key_rotation_status(key_name, CheckSource.API)


def create_orchestrator(
    settings: Optional[KeyLifecycleSettings] = None,
    clock: Optional[Clock] = None,
) -> CryptoOrchestrator:
    """Wire store, manager, service and facade from ``settings``."""

    settings = settings or get_settings()
    clock = clock or utc_now
    parser = EnvironmentFileParser(settings.env_dir)
    secret_files = EnvironmentSecretFileManager(settings.env_dir, parser)
    store = KeyMetadataStore(settings.metadata_path, clock=clock)
    manager = KeyLifecycleManager(
        secret_files,
        store,
        RotationConfig(
            max_age_in_days=settings.max_age_days,
            warning_threshold_in_days=settings.warning_threshold_days,
        ),
        clock=clock,
    )
    crypto = CryptoService(secret_files, settings.base_env_file)
    service = KeyLifecycleService(
        secret_files,
        store,
        parser,
        manager,
        crypto,
        journal=RotationJournal.beside(store),
        clock=clock,
    )
    return CryptoOrchestrator(
        manager,
        EncryptionManager(parser, crypto),
        service,
        key_file=settings.base_env_file,
    )


__all__ = ["CryptoOrchestrator", "create_orchestrator"]
