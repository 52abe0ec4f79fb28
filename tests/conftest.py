import asyncio
import base64
import inspect
import os
import sys
from pathlib import Path

TEST_CIPHER_KEY = base64.b64encode(b"12345678_2345678_2345678_2345678").decode("ascii")

# Must be in place before tokenauth modules read settings
os.environ.setdefault("CIPHER_KEY", TEST_CIPHER_KEY)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("TOKEN_COOKIE_SECURE", "false")
# Cheap Argon2 parameters keep the suite fast
os.environ.setdefault("NONCE_HASH_TIME_COST", "1")
os.environ.setdefault("NONCE_HASH_MEMORY_COST", "1024")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenauth.config import Settings  # noqa: E402
from tokenauth.service.auth import AuthService  # noqa: E402
from tokenauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenauth.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        cipher_key=TEST_CIPHER_KEY,
        token_lifetime_seconds=3600,
        refresh_token_lifetime_days=30,
        nonce_hash_time_cost=1,
        nonce_hash_memory_cost=1024,
        blocking_pool_workers=2,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    service = AuthService(store=memory_store, settings=settings)
    yield service
    service.close()


@pytest.fixture
def service_factory(settings):
    """Build AuthService instances over custom stores; closed after the test."""
    services = []

    def _build(store, **overrides):
        service_settings = settings.model_copy(update=overrides) if overrides else settings
        service = AuthService(store=store, settings=service_settings)
        services.append(service)
        return service

    yield _build
    for service in services:
        service.close()


@pytest.fixture
def test_user(memory_store):
    return memory_store.create_user("service_mock_user", name="Mock User", avatar="a.png")


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
