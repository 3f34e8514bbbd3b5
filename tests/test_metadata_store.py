import json
from datetime import timedelta

import pytest

from envkeeper.errors import MetadataValidationError
from envkeeper.metadata_store import (
    KeyMetadataStore,
    RotationJournal,
    create_default_metadata,
)
from envkeeper.models import (
    AuditEvent,
    EventSeverity,
    EventType,
    HealthCheckEvent,
    CheckSource,
    InterruptedRotation,
    KeyStatus,
    RotationConfig,
    RotationEvent,
    RotationReason,
)


def _populated_record(name, now):
    record = create_default_metadata(name, now=now - timedelta(days=30))
    record.last_rotated_at = now - timedelta(days=3)
    record.rotation_count = 2
    record.usage_tracking.environments_used_in = ['dev.env']
    record.usage_tracking.dependent_variables = ['PORTAL_PASSWORD']
    record.usage_tracking.last_accessed_at = now
    record.audit_trail.audit_events.append(
        AuditEvent(
            timestamp=now,
            event_type=EventType.ROTATED,
            severity=EventSeverity.INFO,
            source='test',
            details='rotated',
            metadata={'reEncryptedCount': 1, 'overrideMode': False, 'vars': ['A', 'B']},
        )
    )
    record.audit_trail.rotation_history.append(
        RotationEvent(
            timestamp=now,
            reason=RotationReason.SCHEDULED,
            affected_environments=['dev.env'],
            affected_variables=['PORTAL_PASSWORD'],
            success=True,
            old_key_hash='1f',
            new_key_hash='2e',
            override_mode=False,
        )
    )
    record.audit_trail.health_check_history.append(
        HealthCheckEvent(
            timestamp=now,
            age_in_days=3,
            days_until_expiry=87,
            status=KeyStatus.HEALTHY,
            check_source=CheckSource.API,
        )
    )
    record.audit_trail.last_health_check = now
    record.audit_trail.last_scheduled_check = now
    return record


@pytest.mark.asyncio
async def test_round_trip_preserves_records_and_dates(store, clock):
    records = {
        'DEV_KEY': _populated_record('DEV_KEY', clock()),
        'QA_KEY': create_default_metadata('QA_KEY', now=clock()),
    }
    await store.write_all(records)

    loaded = await store.read_all()

    assert loaded == records
    assert loaded['DEV_KEY'].last_rotated_at == clock() - timedelta(days=3)
    assert loaded['DEV_KEY'].audit_trail.audit_events[0].timestamp == clock()


@pytest.mark.asyncio
async def test_file_is_pretty_printed_camel_case_json(store, clock):
    await store.write_all({'DEV_KEY': create_default_metadata('DEV_KEY', now=clock())})

    text = store.metadata_path.read_text()
    data = json.loads(text)

    assert text.startswith('{\n  "DEV_KEY"')
    entry = data['DEV_KEY']
    assert entry['keyName'] == 'DEV_KEY'
    assert entry['createdAt'] == '2024-06-01T12:00:00+00:00'
    assert entry['rotationConfig'] == {'maxAgeInDays': 90, 'warningThresholdInDays': 7}
    assert entry['statusTracking']['currentStatus'] == 'healthy'
    assert 'lastRotatedAt' not in entry


@pytest.mark.asyncio
async def test_missing_and_empty_files_read_as_empty(store):
    assert await store.read_all() == {}
    store.metadata_path.parent.mkdir(parents=True)
    store.metadata_path.write_text('   ')
    assert await store.read_all() == {}


@pytest.mark.asyncio
async def test_malformed_json_reads_as_empty(store):
    store.metadata_path.parent.mkdir(parents=True)
    store.metadata_path.write_text('{"DEV_KEY": {')
    assert await store.read_all() == {}


@pytest.mark.asyncio
async def test_record_missing_rotation_config_reads_as_empty(store, clock):
    await store.write_all({
        'DEV_KEY': create_default_metadata('DEV_KEY', now=clock()),
        'QA_KEY': create_default_metadata('QA_KEY', now=clock()),
    })
    data = json.loads(store.metadata_path.read_text())
    del data['QA_KEY']['rotationConfig']
    store.metadata_path.write_text(json.dumps(data))

    # One malformed key invalidates the whole file
    assert await store.read_all() == {}


@pytest.mark.asyncio
async def test_invalid_write_raises_and_leaves_file_untouched(store, clock):
    await store.write_all({'DEV_KEY': create_default_metadata('DEV_KEY', now=clock())})
    before = store.metadata_path.read_text()

    broken = create_default_metadata('DEV_KEY', now=clock())
    broken.rotation_config = RotationConfig(max_age_in_days=7, warning_threshold_in_days=7)
    with pytest.raises(MetadataValidationError):
        await store.write_all({'DEV_KEY': broken})

    assert store.metadata_path.read_text() == before


@pytest.mark.asyncio
async def test_write_backs_up_previous_file(store, clock):
    await store.write_all({'DEV_KEY': create_default_metadata('DEV_KEY', now=clock())})
    # The first write has nothing to back up
    assert not store.archive_dir.exists()

    first = store.metadata_path.read_text()
    clock.advance(seconds=1)
    await store.write_all({})

    backup = store.archive_dir / 'key-metadata.json.backup-2024-06-01T12-00-01-000Z'
    assert backup.read_text() == first
    assert json.loads(store.metadata_path.read_text()) == {}


@pytest.mark.asyncio
async def test_backup_failure_does_not_block_write(store, clock, monkeypatch):
    await store.write_all({'DEV_KEY': create_default_metadata('DEV_KEY', now=clock())})

    def _fail(*args, **kwargs):
        raise OSError('disk full')

    monkeypatch.setattr('envkeeper.metadata_store.shutil.copyfile', _fail)
    await store.write_all({'QA_KEY': create_default_metadata('QA_KEY', now=clock())})

    assert list(await store.read_all()) == ['QA_KEY']


@pytest.mark.asyncio
async def test_single_key_helpers(store, clock):
    record = store.create_default_metadata('DEV_KEY')
    assert record.rotation_count == 0
    assert record.status_tracking.current_status is KeyStatus.HEALTHY

    await store.update_single_key_metadata('DEV_KEY', record)
    assert await store.has_key_metadata('DEV_KEY')
    assert (await store.get_key_metadata('DEV_KEY')) == record

    assert await store.remove_key_metadata('DEV_KEY') is True
    assert await store.remove_key_metadata('DEV_KEY') is False
    assert await store.get_key_metadata('DEV_KEY') is None


@pytest.mark.asyncio
async def test_rotation_journal_records_and_clears(tmp_path, clock):
    journal = RotationJournal(tmp_path / 'rotation-journal.json')
    assert await journal.entries() == []

    entry = InterruptedRotation(
        key_name='DEV_KEY',
        environment_file='dev.env',
        reason=RotationReason.MANUAL,
        state='re_encrypting',
        started_at=clock(),
        updated_at=clock(),
        requires_manual_audit=True,
    )
    await journal.record(entry)

    assert await journal.entries() == [entry]
    assert await journal.clear('DEV_KEY') is True
    assert await journal.clear('DEV_KEY') is False
    assert await journal.entries() == []


@pytest.mark.asyncio
async def test_rotation_journal_beside_store(store):
    journal = RotationJournal.beside(store)
    assert journal.journal_path == store.metadata_path.parent / 'rotation-journal.json'
