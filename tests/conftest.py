import asyncio
import inspect
import os
import sys
import tempfile
import uuid
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="vaultsync_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Empty URL selects the in-process cache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("RATE_LIMIT_AUTH", "1000")
os.environ.setdefault("RATE_LIMIT_GENERAL", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from vaultsync.config import Settings, reset_settings_cache  # noqa: E402
from vaultsync.service.auth import DeviceInfo, InitialVault  # noqa: E402
from vaultsync.service.runtime import Runtime  # noqa: E402
from vaultsync.storage.models import KdfParams, VaultEncryption  # noqa: E402

ACCESS_SECRET = "unit-access-secret-0123456789-abcdefghijklmnop"
REFRESH_SECRET = "unit-refresh-secret-0123456789-abcdefghijklmnop"


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        lockout_threshold=5,
        lockout_minutes=30,
    )


@pytest.fixture
def runtime(settings):
    """Runtime over a fresh memory store and the in-process cache."""
    return Runtime(settings)


def sample_encryption() -> VaultEncryption:
    return VaultEncryption(algorithm="aes-256-gcm", iv="aXYtMTIzNDU2Nzg5", auth_tag="dGFnLWFiY2RlZg==")


def sample_device(identifier: str = "device-1", name: str = "Laptop", platform: str = "desktop-linux") -> DeviceInfo:
    return DeviceInfo(name=name, platform=platform, device_identifier=identifier)


@pytest.fixture
def make_user(runtime):
    """Return a coroutine that registers an account and returns the register payload."""

    async def _make(
        email: str | None = None,
        verifier: str = "verifier-correct",
        *,
        with_vault: bool = True,
        device: DeviceInfo | None = None,
    ) -> dict:
        email = email or f"user-{uuid.uuid4().hex[:12]}@example.com"
        initial = None
        wrapped_key = None
        if with_vault:
            initial = InitialVault(blob="ZW5jcnlwdGVkLXZhdWx0", encryption=sample_encryption(), checksum="c1")
            wrapped_key = "wrapped-key-v1"
        result = await runtime.auth.register(
            email,
            verifier,
            KdfParams(salt="c2FsdC1mb3ItdGVzdHM="),
            device or sample_device(),
            wrapped_vault_key=wrapped_key,
            initial_vault=initial,
        )
        result["email"] = email
        return result

    return _make


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
