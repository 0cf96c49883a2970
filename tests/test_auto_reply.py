import pytest

from modernchat.services import AutoResponder
from modernchat.services.auto_reply import reply_text


def test_reply_text_truncates_long_messages():
    assert reply_text("short") == 'Thanks for your message: "short"'
    assert reply_text("a" * 30) == f'Thanks for your message: "{"a" * 20}..."'


@pytest.mark.asyncio
async def test_other_participant_replies(services, make_user):
    alice, bob = await make_user(services, "alice"), await make_user(services, "bob")
    conversation = await services.conversations.create([alice.id, bob.id])
    responder = AutoResponder(
        services.conversations, services.messages, services.new_typing_notifier(),
        typing_delay=0.01, reply_delay=0.01,
    )

    sent = await services.messages.append(conversation.id, alice.id, "Hello there")
    reply = await responder.schedule(sent)

    assert reply.sender_id == bob.id
    assert reply.content == reply_text("Hello there")
    assert reply.is_read
    assert [m.id for m in await services.messages.list(conversation.id)] == [sent.id, reply.id]
    assert (await services.conversations.get(conversation.id)).typing is False


@pytest.mark.asyncio
async def test_media_messages_get_no_reply(services, make_user):
    alice, bob = await make_user(services, "alice"), await make_user(services, "bob")
    conversation = await services.conversations.create([alice.id, bob.id])
    responder = AutoResponder(services.conversations, services.messages, services.typing)

    photo = await services.messages.append(
        conversation.id, alice.id, "", message_type="image", media_url="https://example.com/p.png"
    )
    assert responder.schedule(photo) is None
    await responder.close()
