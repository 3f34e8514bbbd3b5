import asyncio
import importlib.util
import json
import os
from datetime import timedelta

import pytest
import structlog

from envkeeper.metadata_store import KeyMetadataStore, create_default_metadata
from envkeeper.time_utils import utc_now

SCRIPT = os.path.join(os.path.dirname(__file__), '..', 'scripts', 'manage_keys.py')


@pytest.fixture(scope='module')
def manage_keys():
    module_spec = importlib.util.spec_from_file_location('manage_keys', SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def run(manage_keys, tmp_path, capsys):
    base = [
        '--env-dir', str(tmp_path / 'envs'),
        '--metadata-dir', str(tmp_path / 'metadata'),
        '--log-level', 'WARNING',
    ]

    def _run(*argv):
        code = manage_keys.main(base + list(argv))
        captured = capsys.readouterr()
        return code, captured.out, captured.err

    return _run


def _json(text):
    return json.loads(text)


def test_generate_encrypt_and_rotate(run, tmp_path):
    code, out, _ = run('generate', 'DEV_KEY', '--max-age', '45')
    assert code == 0
    assert _json(out) == {'key': 'DEV_KEY', 'stored': True}

    (tmp_path / 'envs' / 'dev.env').write_text('PORTAL_PASSWORD=s3cret\n')
    code, out, _ = run('encrypt', 'dev.env', 'DEV_KEY')
    assert code == 0
    assert _json(out) == {'environmentFile': 'dev.env', 'encrypted': ['PORTAL_PASSWORD']}

    code, out, _ = run('rotate', 'DEV_KEY', 'dev.env', '--reason', 'scheduled')
    assert code == 0
    assert _json(out) == {'success': True, 'reEncryptedCount': 1, 'affectedFiles': ['dev.env']}

    code, out, _ = run('info', 'DEV_KEY')
    info = _json(out)
    assert code == 0
    assert info['metadata']['rotationCount'] == 1
    assert info['metadata']['rotationConfig']['maxAgeInDays'] == 90
    assert info['auditSummary']['totalKeys'] == 1


def test_generate_twice_does_not_overwrite(run, tmp_path):
    run('generate', 'DEV_KEY')
    first = (tmp_path / 'envs' / '.env').read_text()

    code, out, _ = run('generate', 'DEV_KEY')
    assert code == 0
    assert _json(out)['stored'] is False
    assert (tmp_path / 'envs' / '.env').read_text() == first

    code, out, _ = run('generate', 'DEV_KEY', '--rotate')
    assert _json(out)['stored'] is True
    assert (tmp_path / 'envs' / '.env').read_text() != first


def test_status_and_audit(run):
    run('generate', 'DEV_KEY')

    code, out, _ = run('status', 'DEV_KEY')
    assert code == 0
    assert _json(out)['needsRotation'] is False

    code, out, _ = run('audit')
    assert code == 0
    assert _json(out)['systemHealth'] == 'healthy'

    code, out, _ = run('startup-check')
    assert code == 0
    assert _json(out)['passed'] is True


def test_startup_check_exit_code_for_expired_keys(run, tmp_path):
    store = KeyMetadataStore(tmp_path / 'metadata' / 'key-metadata.json')
    record = create_default_metadata('OLD_KEY', now=utc_now() - timedelta(days=200))
    asyncio.run(store.write_all({'OLD_KEY': record}))

    code, out, _ = run('startup-check')

    assert code == 2
    payload = _json(out)
    assert payload['passed'] is False
    assert payload['criticalKeys'] == ['OLD_KEY']


def test_missing_keys(run):
    code, out, _ = run('info', 'UNKNOWN_KEY')
    assert code == 1
    assert _json(out) == {'exists': False}

    code, out, _ = run('acknowledge', 'UNKNOWN_KEY')
    assert code == 1
    assert _json(out) == {'key': 'UNKNOWN_KEY', 'acknowledged': False}


def test_failed_rotation_reports_on_stderr(run):
    code, out, err = run('rotate', 'UNKNOWN_KEY', 'dev.env')

    assert code == 1
    assert out == ''
    assert '"success": false' in err
    assert "Key 'UNKNOWN_KEY' not found in metadata" in err


def test_rotate_rejects_unknown_reason(manage_keys):
    with pytest.raises(SystemExit):
        manage_keys.parse_args(['rotate', 'DEV_KEY', 'dev.env', '--reason', 'boredom'])
