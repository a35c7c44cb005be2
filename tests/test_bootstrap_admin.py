import importlib.util
from pathlib import Path

import pytest

from csaccess.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


async def test_creates_admin(bootstrap):
    result = await bootstrap("Root@Example.com", "secret123", "Root")
    assert result["status"] == "created"
    user = await get_runtime().store.find_by_email("root@example.com")
    assert user.role == "admin"
    assert user.name == "Root"
    assert await get_runtime().store.list_user_sessions(user.id) == []


async def test_promotes_existing_user(bootstrap):
    registered = await get_runtime().auth.register("a@b.com", "Ann", "secret1")
    result = await bootstrap("a@b.com", "ignored-pw")
    assert result == {"user_id": registered.user["id"], "email": "a@b.com", "status": "promoted"}
    second = await bootstrap("a@b.com", "ignored-pw")
    assert second["status"] == "already_admin"


async def test_dry_run_changes_nothing(bootstrap):
    result = await bootstrap("new@b.com", "secret123", dry_run=True)
    assert result["status"] == "dry_run"
    assert await get_runtime().store.find_by_email("new@b.com") is None
