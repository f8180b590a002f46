from scripts.bootstrap_admin import bootstrap_admin, validate_password

from authcore.service.runtime import get_runtime

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "AdminPassword123!"


def test_validate_password_requires_length_and_classes():
    assert validate_password(ADMIN_PASSWORD)
    assert not validate_password("Short1!")
    assert not validate_password("alllowercaseletters")


async def test_creates_admin_and_closes_bootstrap_session():
    result = await bootstrap_admin(ADMIN_EMAIL, ADMIN_PASSWORD, "Root")

    assert result["status"] == "created"
    runtime = get_runtime()
    user = runtime.store.get_user(result["user_id"])
    assert user.role == "admin"
    assert runtime.store.list_user_sessions(user.id, active_at=None)
    assert await runtime.auth.list_active_sessions(user.id) == []

    again = await bootstrap_admin(ADMIN_EMAIL, ADMIN_PASSWORD)
    assert again["status"] == "already_admin"


async def test_promotes_existing_user():
    runtime = get_runtime()
    registered = await runtime.auth.register(ADMIN_EMAIL, ADMIN_PASSWORD, "Existing")

    result = await bootstrap_admin(ADMIN_EMAIL, ADMIN_PASSWORD)

    assert result == {
        "user_id": registered.user.id,
        "email": ADMIN_EMAIL,
        "status": "promoted",
    }
    assert runtime.store.get_user(registered.user.id).role == "admin"


async def test_dry_run_changes_nothing():
    result = await bootstrap_admin(ADMIN_EMAIL, ADMIN_PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    assert await get_runtime().credentials.get_by_email(ADMIN_EMAIL) is None
