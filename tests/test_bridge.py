"""Tests for the bridge event handlers with fake transports."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from telethon.errors import RPCError
from telethon.tl.types import Chat, User

from config import BridgeConfig, FriendRegistry
import main as main_module
from main import TelegramWhatsAppBridge, sender_full_name
from router import InboundEvent

OWNER = "34600000001"
OWNER_JID = f"{OWNER}@s.whatsapp.net"


@pytest.fixture
def config():
    return BridgeConfig(
        api_id=1,
        api_hash="hash",
        phone="+34612345678",
        whatsapp_number=OWNER,
        friends=FriendRegistry.build([111, 222, 333], [("john", 111)]),
        send_timeout=0.2,
    )


@pytest.fixture
def whatsapp():
    side = MagicMock()
    side.send_text = AsyncMock()
    return side


@pytest.fixture
def bridge(config, whatsapp):
    client = MagicMock()
    client.send_message = AsyncMock()
    return TelegramWhatsAppBridge(config, client=client, whatsapp=whatsapp)


def owner_event(text):
    return InboundEvent(sender_id=OWNER_JID, sender_name=OWNER, text=text, from_owner=True, origin=OWNER_JID)


def telegram_event(sender_id, text, sender=None):
    message = MagicMock()
    message.text = text
    message.sender_id = sender_id
    message.get_sender = AsyncMock(return_value=sender)
    event = MagicMock()
    event.message = message
    return event


class TestWhatsAppToTelegram:
    """Owner commands typed on WhatsApp."""

    @pytest.mark.asyncio
    async def test_send_to_tag(self, bridge, whatsapp):
        await bridge.handle_whatsapp_message(owner_event("tg:john Hello there"), OWNER_JID)

        bridge.client.send_message.assert_awaited_once_with(111, "Hello there")
        whatsapp.send_text.assert_awaited_once_with(OWNER_JID, "✅ Sent to john on Telegram")

    @pytest.mark.asyncio
    async def test_send_to_all(self, bridge, whatsapp):
        await bridge.handle_whatsapp_message(owner_event("TG: Hi everyone"), OWNER_JID)

        sent = [c.args for c in bridge.client.send_message.await_args_list]
        assert sent == [(111, "Hi everyone"), (222, "Hi everyone"), (333, "Hi everyone")]
        whatsapp.send_text.assert_awaited_once_with(OWNER_JID, "✅ Sent to 3 friend(s) on Telegram")

    @pytest.mark.asyncio
    async def test_partial_failure_single_reply(self, bridge, whatsapp):
        bridge.client.send_message.side_effect = [None, ValueError("Could not find the input entity"), None]

        await bridge.handle_whatsapp_message(owner_event("tg: hi"), OWNER_JID)

        assert bridge.client.send_message.await_count == 3
        whatsapp.send_text.assert_awaited_once()
        reply = whatsapp.send_text.await_args.args[1]
        assert "Sent to 2 friend(s)" in reply
        assert "Failed to send to 1 friend(s)" in reply

    @pytest.mark.asyncio
    async def test_send_timeout(self, bridge, whatsapp):
        async def slow(friend_id, text):
            if friend_id == 222:
                await asyncio.sleep(5)

        bridge.client.send_message = AsyncMock(side_effect=slow)

        await bridge.handle_whatsapp_message(owner_event("tg: hi"), OWNER_JID)

        reply = whatsapp.send_text.await_args.args[1]
        assert "Failed to send to 1 friend(s)" in reply

    @pytest.mark.asyncio
    async def test_tag_without_message(self, bridge, whatsapp):
        await bridge.handle_whatsapp_message(owner_event("tg:john"), OWNER_JID)

        bridge.client.send_message.assert_not_awaited()
        whatsapp.send_text.assert_awaited_once_with(OWNER_JID, "⚠️ No message provided after tag.")

    @pytest.mark.asyncio
    async def test_empty_message(self, bridge, whatsapp):
        await bridge.handle_whatsapp_message(owner_event("tg:"), OWNER_JID)

        bridge.client.send_message.assert_not_awaited()
        reply = whatsapp.send_text.await_args.args[1]
        assert reply.startswith("⚠️ Message is empty.")
        assert "john" in reply

    @pytest.mark.asyncio
    async def test_not_a_command(self, bridge, whatsapp):
        await bridge.handle_whatsapp_message(owner_event("just chatting"), OWNER_JID)

        bridge.client.send_message.assert_not_awaited()
        whatsapp.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_sender_ignored(self, bridge, whatsapp):
        stranger = "34699999999@s.whatsapp.net"
        event = InboundEvent(sender_id=stranger, text="tg: hi", origin=stranger)

        await bridge.handle_whatsapp_message(event, stranger)

        bridge.client.send_message.assert_not_awaited()
        whatsapp.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_owner_by_origin(self, bridge, whatsapp):
        event = InboundEvent(sender_id=OWNER_JID, text="tg:john yo", origin=OWNER_JID)

        await bridge.handle_whatsapp_message(event, OWNER_JID)

        bridge.client.send_message.assert_awaited_once_with(111, "yo")

    @pytest.mark.asyncio
    async def test_reply_failure_is_logged(self, bridge, whatsapp):
        whatsapp.send_text.side_effect = RuntimeError("disconnected")

        await bridge.handle_whatsapp_message(owner_event("tg:john hi"), OWNER_JID)

        bridge.client.send_message.assert_awaited_once_with(111, "hi")


class TestTelegramToWhatsApp:
    """Friend messages arriving on Telegram."""

    @pytest.mark.asyncio
    async def test_forward_from_friend(self, bridge, whatsapp):
        sender = User(id=111, first_name="John", last_name="Smith")

        await bridge.handle_telegram_message(telegram_event(111, "Hello\nworld", sender))

        whatsapp.send_text.assert_awaited_once_with(OWNER, "📨 TG | John Smith (john):\nHello\nworld")

    @pytest.mark.asyncio
    async def test_forward_untagged_friend(self, bridge, whatsapp):
        sender = User(id=222, first_name="Mary")

        await bridge.handle_telegram_message(telegram_event(222, "hi", sender))

        whatsapp.send_text.assert_awaited_once_with(OWNER, "📨 TG | Mary:\nhi")

    @pytest.mark.asyncio
    async def test_unknown_sender_not_forwarded(self, bridge, whatsapp):
        sender = User(id=999, first_name="Eve")

        await bridge.handle_telegram_message(telegram_event(999, "hi", sender))

        whatsapp.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_message_without_text_ignored(self, bridge, whatsapp):
        await bridge.handle_telegram_message(telegram_event(111, ""))

        whatsapp.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_error_does_not_raise(self, bridge, whatsapp):
        whatsapp.send_text.side_effect = RuntimeError("socket closed")
        sender = User(id=111, first_name="John")

        await bridge.handle_telegram_message(telegram_event(111, "hi", sender))

        whatsapp.send_text.assert_awaited_once()


class TestSenderName:
    """Display name fallback order."""

    def test_full_name(self):
        assert sender_full_name(User(id=1, first_name="A", last_name="B")) == "A B"

    def test_username(self):
        assert sender_full_name(User(id=1, username="alice")) == "alice"

    def test_id(self):
        assert sender_full_name(User(id=42)) == "42"

    def test_unknown(self):
        assert sender_full_name(None) == "未知用户"


class TestCommands:
    """Command-line entry points."""

    @pytest.mark.asyncio
    async def test_missing_config_exits(self, monkeypatch, tmp_path):
        for key in ("TELEGRAM_API_ID", "TELEGRAM_API_HASH", "TELEGRAM_PHONE"):
            monkeypatch.delenv(key, raising=False)

        with pytest.raises(SystemExit) as exc:
            await main_module.main(["run", "--env", str(tmp_path / "missing.env")])
        assert exc.value.code == 1

    @pytest.mark.asyncio
    async def test_dialogs_list(self):
        async def iter_dialogs(limit=None):
            for dialog in dialogs:
                yield dialog

        friend = MagicMock(entity=User(id=111, first_name="John", username="johnny"))
        friend.name = "John"
        group = MagicMock(entity=Chat(id=5, title="Family", photo=None, participants_count=3,
                                      date=None, version=1))
        group.name = "Family"
        dialogs = [friend, group]
        client = MagicMock()
        client.iter_dialogs = iter_dialogs

        result = await main_module.get_dialogs_list(client)

        assert result == [
            {'id': 111, 'title': "John", 'type': 'user', 'username': "johnny"},
            {'id': 5, 'title': "Family", 'type': 'group', 'username': None},
        ]

    @pytest.mark.asyncio
    async def test_telegram_error_exits(self, monkeypatch, config):
        monkeypatch.setattr(main_module, "load_config", lambda **kwargs: config)
        monkeypatch.setattr(main_module, "login", AsyncMock(side_effect=RPCError(None, "PHONE_CODE_INVALID", 400)))

        with pytest.raises(SystemExit) as exc:
            await main_module.main(["login"])
        assert exc.value.code == 1

    def test_keyboard_interrupt_stops_quietly(self, monkeypatch):
        async def interrupted(argv=None):
            raise KeyboardInterrupt

        monkeypatch.setattr(main_module, "main", interrupted)

        main_module.cli([])
