"""Key rotation with re-encryption of dependent environment values.

A rotation walks through the states of :class:`RotationState`::

    idle -> validating -> decrypting -> key_updated -> re_encrypting
         -> metadata_updated -> audit_recorded -> idle

and may fall into ``failed`` from any of them.  Every transition is written
to the :class:`~envkeeper.metadata_store.RotationJournal` so a process that
dies mid-rotation leaves a trace the next startup check reports.

A failed rotation is never rolled back.  Once the key material has been
swapped, the old key is gone from the secret file and values that were not
yet re-encrypted can only be recovered by hand; the journal entry for such
a rotation is kept and flagged ``requiresManualAudit``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from envkeeper.encryption import CryptoService, is_encrypted_value
from envkeeper.env_files import EnvironmentFileParser, EnvironmentSecretFileManager
from envkeeper.errors import DecryptionError, KeyNotFoundError, KeyRotationError, RotationConfigError
from envkeeper.lifecycle_manager import KeyLifecycleManager, validate_rotation_config
from envkeeper.metadata_store import KeyMetadataStore, RotationJournal
from envkeeper.models import (
    CheckSource,
    EventSeverity,
    EventType,
    InterruptedRotation,
    KeyMetadata,
    KeyStatus,
    RotationConfig,
    RotationReason,
    RotationResult,
)
from envkeeper.observability import sanitize_text
from envkeeper.time_utils import Clock, elapsed_ms, utc_now

logger = structlog.get_logger(__name__)

PathLike = os.PathLike[str] | str


class RotationState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DECRYPTING = "decrypting"
    KEY_UPDATED = "key_updated"
    RE_ENCRYPTING = "re_encrypting"
    METADATA_UPDATED = "metadata_updated"
    AUDIT_RECORDED = "audit_recorded"
    FAILED = "failed"


# Reaching any of these means the old key material is no longer on disk.
POST_SWAP_STATES = frozenset(
    {
        RotationState.KEY_UPDATED,
        RotationState.RE_ENCRYPTING,
        RotationState.METADATA_UPDATED,
        RotationState.AUDIT_RECORDED,
    }
)


@dataclass
class RotationAttempt:
    """In-flight rotation of one key."""

    key_name: str
    environment_file: str
    reason: RotationReason
    started_at: datetime
    state: RotationState = RotationState.IDLE
    updated_at: Optional[datetime] = None
    key_swapped: bool = False
    error_details: Optional[str] = None
    transitions: List[RotationState] = field(default_factory=list)

    def transition(self, state: RotationState, at: datetime) -> None:
        self.state = state
        self.updated_at = at
        self.transitions.append(state)
        if state in POST_SWAP_STATES:
            self.key_swapped = True

    def to_journal_entry(self) -> InterruptedRotation:
        return InterruptedRotation(
            key_name=self.key_name,
            environment_file=self.environment_file,
            reason=self.reason,
            state=self.state.value,
            started_at=self.started_at,
            updated_at=self.updated_at or self.started_at,
            requires_manual_audit=self.key_swapped,
            error_details=self.error_details,
        )


class KeyLifecycleService:
    """Run key rotations and keep their audit trail consistent."""

    def __init__(
        self,
        secret_files: EnvironmentSecretFileManager,
        store: KeyMetadataStore,
        parser: EnvironmentFileParser,
        manager: KeyLifecycleManager,
        crypto: CryptoService,
        *,
        journal: Optional[RotationJournal] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.secret_files = secret_files
        self.store = store
        self.parser = parser
        self.manager = manager
        self.crypto = crypto
        self.journal = journal or RotationJournal.beside(store)
        self._clock = clock
        self._decrypted_cache: Dict[str, Dict[str, str]] = {}
        self._attempts: Dict[str, RotationAttempt] = {}

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------
    async def rotate_key_with_audit(
        self,
        key_file: PathLike,
        key_name: str,
        new_key_value: str,
        environment_file: str,
        reason: RotationReason,
        custom_max_age: Optional[float] = None,
        should_rotate_key: bool = False,
    ) -> RotationResult:
        """Swap ``key_name`` to ``new_key_value`` and re-encrypt ``environment_file``.

        Any failure is recorded in the audit trail and re-raised.
        """

        reason = RotationReason(reason)
        started_at = self._clock()
        attempt = RotationAttempt(
            key_name=key_name,
            environment_file=environment_file,
            reason=reason,
            started_at=started_at,
        )
        self._attempts[key_name] = attempt
        result = RotationResult(success=False, re_encrypted_count=0, affected_files=[environment_file])
        processed_variables: List[str] = []
        old_key_value: Optional[str] = None

        log = logger.bind(key=key_name, environment=environment_file, reason=reason.value)
        log.info("key_rotation_started", override_mode=should_rotate_key)
        try:
            await self._advance(attempt, RotationState.VALIDATING)
            metadata = await self.store.get_key_metadata(key_name)
            if metadata is None:
                raise KeyNotFoundError(f"Key '{key_name}' not found in metadata")
            self._check_existing_config(key_name, metadata)
            rotation_config = validate_rotation_config(
                RotationConfig(
                    max_age_in_days=custom_max_age or self.manager.rotation_config.max_age_in_days,
                    warning_threshold_in_days=self.manager.rotation_config.warning_threshold_in_days,
                )
            )
            self.crypto.validate_key_material(key_name, new_key_value)

            await self.manager.record_audit_event(
                key_name,
                EventType.ROTATED,
                EventSeverity.INFO,
                "rotate_key_with_audit",
                f"Starting key rotation for environment {environment_file} (reason: {reason.value})",
                {
                    "reason": reason,
                    "customMaxAge": custom_max_age,
                    "shouldRotateKey": should_rotate_key,
                    "environmentFile": environment_file,
                },
            )

            old_key_value = await self.secret_files.get_key_value(key_file, key_name)
            if not old_key_value:
                raise KeyNotFoundError(f"Key '{key_name}' not found in {key_file}")

            await self._advance(attempt, RotationState.DECRYPTING)
            decrypted = await self._decrypt_environment_variables(
                key_name, key_file, environment_file, should_rotate_key
            )
            processed_variables = list(decrypted)

            await self._update_and_verify_key(attempt, key_file, key_name, new_key_value)
            await self._advance(attempt, RotationState.KEY_UPDATED)

            await self._advance(attempt, RotationState.RE_ENCRYPTING)
            re_encrypted = await self._re_encrypt_environment_variables(
                key_name, key_file, environment_file, decrypted
            )
            result = RotationResult(
                success=True, re_encrypted_count=re_encrypted, affected_files=[environment_file]
            )

            updated = await self._update_metadata_after_rotation(
                key_name, environment_file, decrypted, rotation_config
            )
            await self._advance(attempt, RotationState.METADATA_UPDATED)

            await self.manager.record_key_access(key_name, "rotation-service")
            await self.manager.add_health_check_entry(key_name, True, reason, result)
            await self.manager.update_audit_trail(
                key_name,
                reason,
                started_at,
                result,
                new_key_value=new_key_value,
                old_key_value=old_key_value,
                should_rotate_key=should_rotate_key,
                processed_variables=processed_variables,
            )
            await self.manager.record_audit_event(
                key_name,
                EventType.ROTATED,
                EventSeverity.INFO,
                "rotate_key_with_audit",
                f"Key rotation completed successfully for environment {environment_file}",
                {
                    "reason": reason,
                    "rotationCount": updated.rotation_count,
                    "reEncryptedCount": re_encrypted,
                    "environmentFile": environment_file,
                    "durationMs": elapsed_ms(started_at, self._clock()),
                    "newMaxAge": rotation_config.max_age_in_days,
                    "processedVariables": processed_variables,
                },
            )
            await self._advance(attempt, RotationState.AUDIT_RECORDED)

            post_rotation = await self.manager.check_key_rotation_status(key_name, CheckSource.MANUAL)
            log.info(
                "key_rotated",
                reencrypted=re_encrypted,
                variables=processed_variables,
                rotation_count=updated.rotation_count,
                override_mode=should_rotate_key,
                age_days=post_rotation.age_in_days,
                needs_rotation=post_rotation.needs_rotation,
            )
            await self._finish(attempt)
            return result
        except Exception as exc:
            result.success = False
            result.error_details = sanitize_text(exc)
            await self._handle_rotation_failure(
                exc,
                attempt,
                result,
                new_key_value=new_key_value,
                old_key_value=old_key_value,
                should_rotate_key=should_rotate_key,
                processed_variables=processed_variables,
            )
            raise
        finally:
            await self._cleanup(attempt, result, processed_variables)

    def _check_existing_config(self, key_name: str, metadata: KeyMetadata) -> None:
        try:
            validate_rotation_config(metadata.rotation_config)
        except RotationConfigError as exc:
            logger.warning("rotation_config_invalid_will_repair", key=key_name, error=str(exc))

    async def _update_and_verify_key(
        self, attempt: RotationAttempt, key_file: PathLike, key_name: str, new_key_value: str
    ) -> None:
        logger.info("key_value_updating", key=key_name)
        # The journal must show the swap before the secret file changes.
        attempt.key_swapped = True
        await self._journal_record(attempt)
        await self.secret_files.update_key_value(key_file, key_name, new_key_value)
        stored = await self.secret_files.get_key_value(key_file, key_name)
        if stored != new_key_value:
            raise KeyRotationError(f"Failed to update key '{key_name}' - key value unchanged")

    async def _decrypt_environment_variables(
        self,
        key_name: str,
        key_file: PathLike,
        environment_file: str,
        should_rotate_key: bool,
    ) -> Dict[str, str]:
        """Return the plaintext of every variable that must move to the new key.

        Encrypted values are decrypted with the current key; with
        ``should_rotate_key`` plaintext values are taken as they are.  A value
        that fails to decrypt is skipped rather than aborting the rotation.
        """

        lines = await self.parser.read_lines(environment_file)
        decrypted: Dict[str, str] = {}
        for name, value in self.parser.extract_variables(lines).items():
            if name == key_name:
                continue
            encrypted = is_encrypted_value(value)
            if not encrypted and not (should_rotate_key and value):
                continue
            if not encrypted:
                plaintext = value
            else:
                try:
                    plaintext = await self.crypto.decrypt(value, key_name, key_file)
                except DecryptionError:
                    logger.warning(
                        "variable_decryption_skipped",
                        variable=name,
                        environment=environment_file,
                        exc_info=True,
                    )
                    continue
            if plaintext.strip():
                decrypted[name] = plaintext

        if not decrypted:
            logger.warning("no_variables_to_rotate", key=key_name, environment=environment_file)
        self._decrypted_cache[environment_file] = decrypted
        return decrypted

    async def _re_encrypt_environment_variables(
        self,
        key_name: str,
        key_file: PathLike,
        environment_file: str,
        decrypted: Dict[str, str],
    ) -> int:
        if not decrypted:
            logger.warning("re_encryption_skipped", environment=environment_file, reason="nothing decrypted")
            return 0
        if not await self.secret_files.get_key_value(key_file, key_name):
            raise KeyNotFoundError(f"Key '{key_name}' not found in {key_file} for re-encryption")

        lines = await self.parser.read_lines(environment_file)
        for name, plaintext in decrypted.items():
            ciphertext = await self.crypto.encrypt(plaintext, key_name, key_file)
            lines = self.parser.update_lines(lines, name, ciphertext)
        path = await self.parser.write_lines(environment_file, lines)

        stored = self.parser.extract_variables(await self.parser.read_lines(environment_file))
        for name, plaintext in decrypted.items():
            try:
                readable = await self.crypto.decrypt(stored.get(name, ""), key_name, key_file)
            except DecryptionError as exc:
                raise KeyRotationError(f"Re-encrypted variable '{name}' is not readable") from exc
            if readable != plaintext:
                raise KeyRotationError(f"Re-encrypted variable '{name}' does not match its plaintext")

        logger.info("variables_re_encrypted", path=str(path), count=len(decrypted))
        return len(decrypted)

    async def _update_metadata_after_rotation(
        self,
        key_name: str,
        environment_file: str,
        decrypted: Dict[str, str],
        rotation_config: RotationConfig,
    ) -> KeyMetadata:
        metadata = await self.store.get_key_metadata(key_name)
        if metadata is None:
            raise KeyNotFoundError(f"Key '{key_name}' disappeared from metadata during rotation")
        now = self._clock()
        metadata.last_rotated_at = now
        metadata.rotation_count += 1
        metadata.rotation_config = rotation_config
        metadata.usage_tracking = self.manager.update_usage_tracking(
            {environment_file: decrypted} if decrypted else {}, metadata.usage_tracking
        )
        self.manager._update_status_if_changed(metadata, KeyStatus.HEALTHY)
        await self.store.update_single_key_metadata(key_name, metadata)
        return metadata

    async def _handle_rotation_failure(
        self,
        exc: BaseException,
        attempt: RotationAttempt,
        result: RotationResult,
        *,
        new_key_value: str,
        old_key_value: Optional[str],
        should_rotate_key: bool,
        processed_variables: List[str],
    ) -> None:
        key_name = attempt.key_name
        message = sanitize_text(exc)
        attempt.error_details = message
        await self._advance(attempt, RotationState.FAILED)
        if not attempt.key_swapped:
            await self._journal_clear(key_name)

        await self.manager.add_health_check_entry(key_name, False, attempt.reason, result)
        await self.manager.record_audit_event(
            key_name,
            EventType.ROTATED,
            EventSeverity.CRITICAL,
            "rotate_key_with_audit",
            f"Key rotation failed for environment {attempt.environment_file}: {message}",
            {
                "reason": attempt.reason,
                "error": message,
                "reEncryptedCount": result.re_encrypted_count,
                "environmentFile": attempt.environment_file,
                "durationMs": elapsed_ms(attempt.started_at, self._clock()),
                "processedVariables": processed_variables,
                "keySwapped": attempt.key_swapped,
            },
        )
        await self.manager.update_audit_trail(
            key_name,
            attempt.reason,
            attempt.started_at,
            result,
            new_key_value=new_key_value,
            old_key_value=old_key_value,
            should_rotate_key=should_rotate_key,
            error=exc,
            processed_variables=processed_variables,
        )
        logger.error(
            "key_rotation_failed",
            key=key_name,
            environment=attempt.environment_file,
            error=message,
            requires_manual_audit=attempt.key_swapped,
        )

    async def _cleanup(
        self, attempt: RotationAttempt, result: RotationResult, processed_variables: List[str]
    ) -> None:
        self.clear_decrypted_cache()
        self._attempts.pop(attempt.key_name, None)
        logger.info(
            "key_rotation_finished",
            key=attempt.key_name,
            environment=attempt.environment_file,
            duration_ms=elapsed_ms(attempt.started_at, self._clock()),
            success=result.success,
            reencrypted=result.re_encrypted_count,
            variables=processed_variables,
        )
        if attempt.reason not in (RotationReason.EXPIRED, RotationReason.COMPROMISED):
            return
        logger.info("post_rotation_system_audit_triggered", key=attempt.key_name)
        try:
            audit = await self.manager.perform_comprehensive_audit()
        except Exception:
            logger.warning("post_rotation_system_audit_failed", key=attempt.key_name, exc_info=True)
            return
        logger.info(
            "post_rotation_system_audit_completed",
            health=audit.system_health.value,
            needing_rotation=len(audit.keys_needing_rotation),
            needing_warning=len(audit.keys_needing_warning),
        )

    # ------------------------------------------------------------------
    # State tracking
    # ------------------------------------------------------------------
    async def _advance(self, attempt: RotationAttempt, state: RotationState) -> None:
        attempt.transition(state, self._clock())
        logger.debug("rotation_state_changed", key=attempt.key_name, state=state.value)
        await self._journal_record(attempt)

    async def _journal_record(self, attempt: RotationAttempt) -> None:
        try:
            await self.journal.record(attempt.to_journal_entry())
        except OSError:
            logger.warning("rotation_journal_write_failed", key=attempt.key_name, exc_info=True)

    async def _finish(self, attempt: RotationAttempt) -> None:
        attempt.transition(RotationState.IDLE, self._clock())
        await self._journal_clear(attempt.key_name)

    async def _journal_clear(self, key_name: str) -> None:
        try:
            await self.journal.clear(key_name)
        except OSError:
            logger.warning("rotation_journal_clear_failed", key=key_name, exc_info=True)

    def get_rotation_attempt(self, key_name: str) -> Optional[RotationAttempt]:
        return self._attempts.get(key_name)

    async def interrupted_rotations(self) -> List[InterruptedRotation]:
        """Journal entries of rotations that did not finish cleanly."""

        return [
            entry for entry in await self.journal.entries() if entry.key_name not in self._attempts
        ]

    async def acknowledge_interrupted_rotation(self, key_name: str) -> bool:
        cleared = await self.journal.clear(key_name)
        if cleared:
            logger.info("interrupted_rotation_acknowledged", key=key_name)
            await self.manager.record_audit_event(
                key_name,
                EventType.HEALTH_CHECK,
                EventSeverity.INFO,
                "acknowledge_interrupted_rotation",
                "Interrupted rotation acknowledged after manual audit",
            )
        return cleared

    # ------------------------------------------------------------------
    # Decrypted value cache
    # ------------------------------------------------------------------
    def clear_decrypted_cache(self) -> None:
        self._decrypted_cache.clear()

    def get_cache_status(self) -> Dict[str, Any]:
        return {"size": len(self._decrypted_cache), "files": list(self._decrypted_cache)}


__all__ = [
    "POST_SWAP_STATES",
    "KeyLifecycleService",
    "RotationAttempt",
    "RotationState",
]
