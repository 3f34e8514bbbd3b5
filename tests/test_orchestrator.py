import pytest
from cryptography.fernet import Fernet

from envkeeper.models import (
    AuditSummary,
    CheckSource,
    EventSeverity,
    EventType,
    RotationReason,
    SystemHealth,
)
from envkeeper.lifecycle_service import RotationAttempt, RotationState
from envkeeper.orchestrator import create_orchestrator
from envkeeper.settings import get_settings


@pytest.mark.asyncio
async def test_generate_stores_usable_key_once(orchestrator, settings, store):
    assert await orchestrator.generate_rotatable_secret_key('DEV_KEY', max_age_in_days=60) is True
    assert await orchestrator.generate_rotatable_secret_key('DEV_KEY') is False

    line = (settings.env_dir / '.env').read_text().strip()
    name, value = line.split('=', 1)
    assert name == 'DEV_KEY'
    Fernet(value.encode('utf-8'))
    record = await store.get_key_metadata('DEV_KEY')
    assert record.rotation_config.max_age_in_days == 60


@pytest.mark.asyncio
async def test_generate_accepts_explicit_key_material(orchestrator, settings):
    await orchestrator.generate_rotatable_secret_key('DEV_KEY', secret_key='provided-value')
    assert (settings.env_dir / '.env').read_text() == 'DEV_KEY=provided-value\n'

    with pytest.raises(ValueError):
        await orchestrator.generate_rotatable_secret_key('QA_KEY', secret_key='   ')


@pytest.mark.asyncio
async def test_encrypting_variables_records_usage(orchestrator, env_writer, store):
    await orchestrator.generate_rotatable_secret_key('DEV_KEY')
    env_writer('dev.env', 'PORTAL_USER=admin\nPORTAL_PASSWORD=s3cret\n')

    encrypted = await orchestrator.encrypt_environment_variables('dev.env', 'DEV_KEY')

    assert encrypted == ['PORTAL_USER', 'PORTAL_PASSWORD']
    usage = (await store.get_key_metadata('DEV_KEY')).usage_tracking
    assert usage.environments_used_in == ['dev.env']
    assert usage.dependent_variables == ['PORTAL_USER', 'PORTAL_PASSWORD']


@pytest.mark.asyncio
async def test_key_information_for_missing_key(orchestrator):
    info = await orchestrator.get_key_information('UNKNOWN_KEY')

    assert info.exists is False
    assert info.metadata is None
    assert info.audit_summary is None


@pytest.mark.asyncio
async def test_key_information_summarises_a_single_key(orchestrator, seed_key):
    await seed_key('DEV_KEY', age_days=85)

    info = await orchestrator.get_key_information('DEV_KEY')

    summary = info.audit_summary
    assert isinstance(summary, AuditSummary)
    assert summary.total_keys == 1
    assert (summary.healthy_keys, summary.warning_keys, summary.critical_keys) == (0, 1, 0)
    assert summary.expired_keys == 0
    assert summary.average_key_age == 85
    assert summary.current_status is SystemHealth.WARNING
    assert summary.total_rotations == 1


@pytest.mark.asyncio
async def test_key_information_without_audit(orchestrator, seed_key):
    await seed_key('DEV_KEY', age_days=10)

    info = await orchestrator.get_key_information('DEV_KEY', include_audit=False)

    assert info.exists is True
    assert info.rotation_status.days_until_rotation == 80
    assert info.audit_summary is None


@pytest.mark.asyncio
async def test_status_checks_are_attributed_to_the_api(orchestrator, seed_key, store):
    await seed_key('DEV_KEY', age_days=91)

    status = await orchestrator.check_key_rotation_status('DEV_KEY')

    assert status.needs_rotation is True
    record = await store.get_key_metadata('DEV_KEY')
    assert record.audit_trail.health_check_history[-1].check_source is CheckSource.API


@pytest.mark.asyncio
async def test_startup_check_passes_for_healthy_system(orchestrator, seed_key):
    await seed_key('DEV_KEY', age_days=10)

    result = await orchestrator.perform_startup_security_check()

    assert result.passed is True
    assert result.system_health is SystemHealth.HEALTHY
    assert result.recommendations == []
    assert result.interrupted_rotations == []


@pytest.mark.asyncio
async def test_startup_check_fails_on_expired_keys(orchestrator, seed_key):
    await seed_key('OLD_KEY', age_days=120)
    await seed_key('SOON_KEY', age_days=86)

    result = await orchestrator.perform_startup_security_check()

    assert result.passed is False
    assert result.system_health is SystemHealth.CRITICAL
    assert result.critical_keys == ['OLD_KEY']
    assert result.warning_keys == ['SOON_KEY']
    assert result.expired_keys == ['OLD_KEY']
    assert result.audit_summary.total_keys == 2


@pytest.mark.asyncio
async def test_startup_check_passes_with_warnings(orchestrator, seed_key):
    await seed_key('SOON_KEY', age_days=86)

    result = await orchestrator.perform_startup_security_check()

    assert result.passed is True
    assert result.system_health is SystemHealth.WARNING
    assert result.recommendations == [
        '1 key(s) should be rotated soon',
        'Consider reducing key rotation intervals',
    ]


@pytest.mark.asyncio
async def test_startup_check_reports_interrupted_rotations(orchestrator, seed_key, store, clock):
    await seed_key('DEV_KEY', age_days=10)
    attempt = RotationAttempt(
        key_name='DEV_KEY',
        environment_file='dev.env',
        reason=RotationReason.SCHEDULED,
        started_at=clock(),
    )
    attempt.transition(RotationState.KEY_UPDATED, clock())
    await orchestrator.service.journal.record(attempt.to_journal_entry())

    result = await orchestrator.perform_startup_security_check()

    assert result.passed is True
    (entry,) = result.interrupted_rotations
    assert entry.key_name == 'DEV_KEY'
    assert entry.requires_manual_audit is True
    assert result.recommendations == [
        '1 key(s) have interrupted rotations requiring manual audit'
    ]
    event = (await store.get_key_metadata('DEV_KEY')).audit_trail.audit_events[-1]
    assert event.event_type is EventType.HEALTH_CHECK
    assert event.severity is EventSeverity.CRITICAL
    assert event.source == 'startup_security_check'
    assert event.metadata['state'] == 'key_updated'

    assert await orchestrator.acknowledge_interrupted_rotation('DEV_KEY') is True
    assert (await orchestrator.perform_startup_security_check()).interrupted_rotations == []


def test_create_orchestrator_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv('ENVKEEPER_ENV_DIR', str(tmp_path / 'custom-envs'))
    monkeypatch.setenv('KEY_MAX_AGE_DAYS', '30')
    monkeypatch.setenv('KEY_WARNING_THRESHOLD_DAYS', '5')
    get_settings.cache_clear()

    orchestrator = create_orchestrator()

    assert orchestrator.key_file == '.env'
    assert orchestrator.manager.rotation_config.max_age_in_days == 30
    assert orchestrator.manager.rotation_config.warning_threshold_in_days == 5
    assert orchestrator.service.parser.env_dir == tmp_path / 'custom-envs'
    assert orchestrator.manager.store.metadata_path == (
        tmp_path / 'default-metadata' / 'key-metadata.json'
    )
