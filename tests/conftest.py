import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

# Ensure the repository root is on sys.path so tests can import the envkeeper package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from envkeeper.metadata_store import KeyMetadataStore, create_default_metadata
from envkeeper.models import RotationConfig
from envkeeper.orchestrator import create_orchestrator
from envkeeper.settings import KeyLifecycleSettings, get_settings

try:
    import pytest_asyncio  # type: ignore  # noqa: F401
except ImportError:

    @pytest.hookimpl(tryfirst=True)
    def pytest_pyfunc_call(pyfuncitem):
        """Run ``async def`` tests via ``asyncio.run`` when pytest-asyncio is missing."""

        if inspect.iscoroutinefunction(pyfuncitem.obj):
            testargs = {
                name: pyfuncitem.funcargs[name]
                for name in pyfuncitem._fixtureinfo.argnames
            }
            asyncio.run(pyfuncitem.obj(**testargs))
            return True
        return None

    def pytest_configure(config):
        config.addinivalue_line('markers', 'asyncio: run the coroutine test with asyncio.run')


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path, monkeypatch):
    monkeypatch.setenv('ENVKEEPER_METADATA_DIR', str(tmp_path / 'default-metadata'))
    for name in ('KEY_MAX_AGE_DAYS', 'KEY_WARNING_THRESHOLD_DAYS', 'ENVKEEPER_ENV_DIR'):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings(tmp_path) -> KeyLifecycleSettings:
    return KeyLifecycleSettings(
        env_dir=tmp_path / 'envs',
        metadata_dir=tmp_path / 'metadata',
    )


@pytest.fixture
def orchestrator(settings, clock):
    return create_orchestrator(settings, clock)


@pytest.fixture
def store(settings, clock) -> KeyMetadataStore:
    return KeyMetadataStore(settings.metadata_path, clock=clock)


@pytest.fixture
def seed_key(store, clock):
    """Write a metadata record whose reference date is ``age_days`` in the past."""

    async def _seed(
        key_name: str,
        *,
        age_days: float = 0,
        rotated: bool = True,
        config: Optional[RotationConfig] = None,
    ):
        reference = clock() - timedelta(days=age_days)
        record = create_default_metadata(key_name, now=reference, rotation_config=config)
        if rotated:
            record.rotation_count = 1
            record.last_rotated_at = reference
            record.created_at = reference - timedelta(days=365)
        await store.update_single_key_metadata(key_name, record)
        return record

    return _seed


def write_env(settings: KeyLifecycleSettings, name: str, content: str) -> Path:
    path = settings.env_dir / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')
    return path


@pytest.fixture
def env_writer(settings):
    return lambda name, content: write_env(settings, name, content)
