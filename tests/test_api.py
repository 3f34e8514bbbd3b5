import asyncio

import pytest
from fastapi.testclient import TestClient

from envkeeper.api import create_app


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator))


@pytest.fixture
def provisioned_key(orchestrator, env_writer):
    async def _provision():
        await orchestrator.generate_rotatable_secret_key('DEV_KEY')
        env_writer('dev.env', 'PORTAL_PASSWORD=s3cret\n')
        await orchestrator.encrypt_environment_variables('dev.env', 'DEV_KEY')

    asyncio.run(_provision())
    return 'DEV_KEY'


def test_health(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.json() == {'success': True, 'data': {'status': 'ok'}}


def test_unknown_key_returns_404_envelope(client):
    resp = client.get('/keys/UNKNOWN_KEY')
    assert resp.status_code == 404
    assert resp.json() == {
        'success': False,
        'error': {
            'code': 404,
            'message': "Key 'UNKNOWN_KEY' not found in metadata",
            'details': None,
        },
    }


def test_key_info_uses_camel_case(client, seed_key):
    asyncio.run(seed_key('DEV_KEY', age_days=10))

    resp = client.get('/keys/DEV_KEY')

    assert resp.status_code == 200
    data = resp.json()['data']
    assert data['exists'] is True
    assert data['metadata']['keyName'] == 'DEV_KEY'
    assert data['metadata']['rotationConfig'] == {'maxAgeInDays': 90, 'warningThresholdInDays': 7}
    assert data['rotationStatus'] == {
        'needsRotation': False,
        'needsWarning': False,
        'ageInDays': 10,
        'daysUntilRotation': 80,
    }
    assert data['auditSummary']['totalKeys'] == 1
    assert data['auditSummary']['currentStatus'] == 'healthy'


def test_key_info_without_audit(client, seed_key):
    asyncio.run(seed_key('DEV_KEY', age_days=10))

    data = client.get('/keys/DEV_KEY', params={'include_audit': 'false'}).json()['data']

    assert 'auditSummary' not in data


def test_rotation_status(client, seed_key):
    asyncio.run(seed_key('DEV_KEY', age_days=91))

    resp = client.get('/keys/DEV_KEY/rotation-status')

    assert resp.status_code == 200
    assert resp.json()['data'] == {
        'needsRotation': True,
        'needsWarning': False,
        'ageInDays': 91,
        'daysUntilRotation': 0,
    }


def test_rotate_key(client, provisioned_key):
    resp = client.post(
        f'/keys/{provisioned_key}/rotate',
        json={'environmentFile': 'dev.env', 'reason': 'scheduled'},
    )

    assert resp.status_code == 200
    assert resp.json() == {
        'success': True,
        'data': {'success': True, 'reEncryptedCount': 1, 'affectedFiles': ['dev.env']},
    }


@pytest.mark.parametrize(
    'body',
    [
        {},
        {'environmentFile': '   '},
        {'environmentFile': 'dev.env', 'reason': 'boredom'},
        {'environmentFile': 'dev.env', 'customMaxAge': 0},
        {'environmentFile': 'dev.env', 'newKeyValue': ''},
        {'environmentFile': 'dev.env', 'unexpected': True},
    ],
)
def test_rotate_request_validation(client, provisioned_key, body):
    resp = client.post(f'/keys/{provisioned_key}/rotate', json=body)

    assert resp.status_code == 422
    payload = resp.json()
    assert payload['success'] is False
    assert payload['error']['message'] == 'Request validation failed'
    assert payload['error']['details']


def test_rotate_with_invalid_max_age(client, provisioned_key):
    resp = client.post(
        f'/keys/{provisioned_key}/rotate',
        json={'environmentFile': 'dev.env', 'customMaxAge': 5},
    )

    assert resp.status_code == 422
    assert 'warningThresholdInDays' in resp.json()['error']['message']


def test_rotate_with_unusable_key_material(client, provisioned_key, settings):
    key_file = settings.env_dir / '.env'
    before = key_file.read_text()

    resp = client.post(
        f'/keys/{provisioned_key}/rotate',
        json={'environmentFile': 'dev.env', 'newKeyValue': 'my-new-key'},
    )

    assert resp.status_code == 422
    assert resp.json()['error']['message'] == "Key 'DEV_KEY' is not valid Fernet key material"
    assert key_file.read_text() == before


def test_rotate_unknown_key(client):
    resp = client.post('/keys/UNKNOWN_KEY/rotate', json={'environmentFile': 'dev.env'})
    assert resp.status_code == 404


def test_rotate_with_missing_environment_file(client, provisioned_key):
    resp = client.post(
        f'/keys/{provisioned_key}/rotate', json={'environmentFile': 'missing.env'}
    )

    assert resp.status_code == 500
    assert resp.json()['success'] is False
    assert 'missing.env' in resp.json()['error']['message']


def test_audit_and_startup_check(client):
    audit = client.get('/audit')
    assert audit.status_code == 200
    data = audit.json()['data']
    assert data['systemHealth'] == 'healthy'
    assert data['auditSummary']['totalKeys'] == 0

    startup = client.get('/startup-check')
    assert startup.status_code == 200
    assert startup.json()['data']['passed'] is True
    assert startup.json()['data']['interruptedRotations'] == []
