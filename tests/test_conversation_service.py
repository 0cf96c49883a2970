import pytest

from modernchat.exceptions import ConversationNotFound, ValidationError
from modernchat.models import SyncState
from modernchat.services import ChatServices


@pytest.mark.asyncio
async def test_direct_conversation_is_idempotent(services, make_user):
    alice, bob = await make_user(services, "alice"), await make_user(services, "bob")

    first = await services.conversations.create([alice.id, bob.id])
    second = await services.conversations.create([bob.id, alice.id])

    assert first.id == second.id
    assert not first.is_group and first.group_name is None
    assert len(await services.conversations.list(alice.id)) == 1


@pytest.mark.asyncio
async def test_group_conversation(services, make_user):
    users = [await make_user(services, name) for name in ("a", "b", "c")]
    ids = [u.id for u in users]

    group = await services.conversations.create(ids, group_name="  Friends ")
    assert group.is_group and group.group_name == "Friends"
    assert group.group_avatar.startswith("https://ui-avatars.com/")

    other = await services.conversations.create(ids, group_name="Friends")
    assert other.id != group.id

    named_pair = await services.conversations.create(ids[:2], group_name="Pair")
    assert named_pair.is_group


@pytest.mark.asyncio
async def test_create_validation(services, make_user):
    alice, bob, carol = [await make_user(services, n) for n in ("alice", "bob", "carol")]

    with pytest.raises(ValidationError):
        await services.conversations.create([alice.id])
    with pytest.raises(ValidationError):
        await services.conversations.create([alice.id, alice.id])
    with pytest.raises(ValidationError):
        await services.conversations.create([alice.id, bob.id, carol.id])
    with pytest.raises(ValidationError):
        await services.conversations.create([alice.id, "user-ghost"])


@pytest.mark.asyncio
async def test_require_unknown_conversation(services):
    with pytest.raises(ConversationNotFound):
        await services.conversations.require("direct_missing")


@pytest.mark.asyncio
async def test_list_hides_blocked_direct_conversations(services, make_user):
    alice, bob, carol = [await make_user(services, n) for n in ("alice", "bob", "carol")]
    with_bob = await services.conversations.create([alice.id, bob.id])
    with_carol = await services.conversations.create([alice.id, carol.id])
    group = await services.conversations.create([alice.id, bob.id, carol.id], group_name="All")

    await services.users.block_user(alice.id, bob.id)

    visible = {c.id for c in await services.conversations.list(alice.id)}
    assert visible == {with_carol.id, group.id}
    assert with_bob.id in {c.id for c in await services.conversations.list(bob.id)}

    await services.users.unblock_user(alice.id, bob.id)
    assert with_bob.id in {c.id for c in await services.conversations.list(alice.id)}


@pytest.mark.asyncio
async def test_list_orders_by_last_activity(services, make_user):
    alice, bob, carol = [await make_user(services, n) for n in ("alice", "bob", "carol")]
    older = await services.conversations.create([alice.id, bob.id])
    newer = await services.conversations.create([alice.id, carol.id])

    await services.messages.append(newer.id, carol.id, "first")
    await services.messages.append(older.id, bob.id, "second")
    conversations = await services.conversations.list(alice.id)
    assert conversations[0].last_message.timestamp >= conversations[1].last_message.timestamp
    assert conversations[0].last_message.content == "second"


@pytest.mark.asyncio
async def test_search_by_peer_and_group_name(services, make_user):
    alice, bob, carol = [await make_user(services, n) for n in ("alice", "Bobby", "carol")]
    direct = await services.conversations.create([alice.id, bob.id])
    group = await services.conversations.create([alice.id, bob.id, carol.id], group_name="Book Club")

    assert [c.id for c in await services.conversations.search(alice.id, "bob")] == [direct.id]
    assert [c.id for c in await services.conversations.search(alice.id, "CLUB")] == [group.id]
    assert len(await services.conversations.search(alice.id, "")) == 2
    assert await services.conversations.search(alice.id, "zzz") == []


@pytest.mark.asyncio
async def test_failed_update_is_reverted(flaky_services, flaky_gateway, make_user):
    alice, bob = await make_user(flaky_services, "alice"), await make_user(flaky_services, "bob")
    conversation = await flaky_services.conversations.create([alice.id, bob.id])

    flaky_gateway.down = True
    await flaky_services.conversations.set_typing(conversation.id, True)

    assert flaky_services.conversations.sync_state(conversation.id) == SyncState.REVERTED
    assert flaky_services.conversations.local_view(conversation.id).typing is False


@pytest.mark.asyncio
async def test_created_while_down_is_saved_locally(flaky_services, flaky_gateway, make_user):
    alice, bob = await make_user(flaky_services, "alice"), await make_user(flaky_services, "bob")
    users = {alice.id: alice, bob.id: bob}

    async def cached_user(user_id):
        return users.get(user_id)

    flaky_services.users.get_user = cached_user
    flaky_gateway.down = True
    conversation = await flaky_services.conversations.create([alice.id, bob.id])

    assert flaky_services.conversations.sync_state(conversation.id) == SyncState.SAVED_LOCALLY
    assert [c.id for c in await flaky_services.conversations.list(alice.id)] == [conversation.id]


@pytest.mark.asyncio
async def test_remote_update_wins_over_local_view(gateway, make_user):
    first_client = ChatServices(gateway)
    second_client = ChatServices(gateway)
    alice, bob = await make_user(first_client, "alice"), await make_user(first_client, "bob")
    conversation = await first_client.conversations.create([alice.id, bob.id])

    changes = []
    await first_client.conversations.subscribe(alice.id, lambda cid, conv: changes.append((cid, conv)))
    await second_client.conversations.set_typing(conversation.id, True)

    assert changes[-1][0] == conversation.id
    assert changes[-1][1].typing is True
    assert first_client.conversations.local_view(conversation.id).typing is True
    assert first_client.conversations.sync_state(conversation.id) == SyncState.CONFIRMED


@pytest.mark.asyncio
async def test_subscription_ignores_other_users(services, make_user):
    alice, bob, carol = [await make_user(services, n) for n in ("alice", "bob", "carol")]
    changes = []
    await services.conversations.subscribe(carol.id, lambda cid, conv: changes.append(cid))

    await services.conversations.create([alice.id, bob.id])
    assert changes == []
