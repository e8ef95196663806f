import asyncio
import inspect
import os
import sys
import tempfile
import uuid
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="chatwarden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("IDENTITY_BACKEND", "jwt")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limits run in-process; no Redis in the unit suite
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatwarden.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from chatwarden.storage.models import SUBJECTS, Subject  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state file per test so the memory store never reloads another test's data
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    reset_runtime_for_tests()
    yield
    # Restore env patched by the test before rebuilding the runtime
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def make_subject(runtime):
    """Factory writing a subject record straight to the store; returns its id."""

    def _make(*, is_admin=False, email=None, subject_id=None):
        subject_id = subject_id or f"uid-{uuid.uuid4().hex[:16]}"
        subject = Subject(
            id=subject_id,
            email=email or f"{subject_id}@example.com",
            is_admin=is_admin,
        )
        runtime.store.create(SUBJECTS, subject.to_document(), key=subject_id)
        return subject_id

    return _make


@pytest.fixture
def token_for(runtime):
    def _issue(subject_id, **kwargs):
        return runtime.identity_provider.issue_token(subject_id, **kwargs)

    return _issue


@pytest.fixture
def admin(make_subject, token_for):
    """An admin subject and a valid token for it."""
    admin_id = make_subject(is_admin=True)
    return {"id": admin_id, "token": token_for(admin_id)}


@pytest.fixture
def member(make_subject, token_for):
    """A regular subject and a valid token for it."""
    member_id = make_subject()
    return {"id": member_id, "token": token_for(member_id)}


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
