import pytest

from chat_gateway import USERS
from modernchat.exceptions import UserNotFound, ValidationError
from modernchat.models import UserSettings


@pytest.mark.asyncio
async def test_save_user_last_write_wins(services, gateway, make_user):
    alice = await make_user(services, "alice")
    first = alice.model_copy(deep=True)
    second = alice.model_copy(deep=True)
    first.avatar = "https://example.com/first.png"
    second.settings = UserSettings(theme="dark", display_name="Alice")

    await services.users.save_user(first)
    await services.users.save_user(second)

    stored = await services.users.get_user(alice.id)
    assert stored.settings.theme == "dark"
    assert stored.avatar == alice.avatar
    assert "blockedUsers" in await gateway.get(USERS, alice.id)


@pytest.mark.asyncio
async def test_update_settings_and_profile(services, make_user):
    alice = await make_user(services, "alice")

    updated = await services.users.update_settings(alice.id, UserSettings(language="fr", bio="hi"))
    assert updated.settings.language == "fr"

    updated = await services.users.update_profile(alice.id, avatar="https://example.com/me.png")
    assert updated.avatar == "https://example.com/me.png"
    assert updated.settings.bio == "hi"

    assert await services.users.update_settings("user-missing", UserSettings()) is None


@pytest.mark.asyncio
async def test_list_users_skips_pending_and_caller(services, make_user):
    alice, bob = await make_user(services, "alice"), await make_user(services, "bob")
    await services.users.save_user(services.users.new_user("pending"))

    assert [u.id for u in await services.users.list_users(exclude_id=alice.id)] == [bob.id]
    assert len(await services.users.list_users(approved_only=False)) == 3


@pytest.mark.asyncio
async def test_block_rules(services, make_user):
    alice, bob = await make_user(services, "alice"), await make_user(services, "bob")

    with pytest.raises(ValidationError):
        await services.users.block_user(alice.id, alice.id)
    with pytest.raises(UserNotFound):
        await services.users.block_user("user-missing", bob.id)

    blocked = await services.users.block_user(alice.id, bob.id)
    assert blocked.blocked_users == {bob.id}
    assert (await services.users.get_user(alice.id)).blocked_users == {bob.id}


@pytest.mark.asyncio
async def test_presence(services, make_user):
    alice = await make_user(services, "alice")
    assert (await services.users.set_online(alice.id, True)).is_online
    assert not (await services.users.set_online(alice.id, False)).is_online
    assert await services.users.set_online("user-missing", True) is None


@pytest.mark.asyncio
async def test_save_user_reports_failure(flaky_services, flaky_gateway):
    flaky_gateway.down = True
    assert await flaky_services.users.save_user(flaky_services.users.new_user("zed")) is False
