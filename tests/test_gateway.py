"""
Unit tests for the Telethon gateway: message conversion, entity caching,
FLOOD_WAIT retries and error translation.
"""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from telethon import errors as tg_errors
from telethon.tl.types import PeerChannel, PeerChat, PeerUser

from coreusers.gateway import (
    AuthorKind,
    GatewayEntityNotFoundError,
    GatewayError,
    GatewayPermissionError,
    GatewayRateLimitError,
    SenderPeer,
    TelethonGateway,
    peer_to_sender,
    to_gateway_message,
)
from shared.cache import TTLCache

DATE = datetime(2026, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def client():
    client = MagicMock()
    client.get_entity = AsyncMock(return_value=SimpleNamespace(id=555))
    client.get_messages = AsyncMock(return_value=[])
    return client


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def gateway(client, sleep):
    return TelethonGateway(client, max_retries=2, max_flood_wait_seconds=30, sleep=sleep)


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


class TestConversion:
    def test_peer_kinds(self):
        assert peer_to_sender(PeerUser(user_id=1)) == SenderPeer(AuthorKind.USER, 1)
        assert peer_to_sender(PeerChannel(channel_id=2)) == SenderPeer(AuthorKind.CHANNEL, 2)
        assert peer_to_sender(PeerChat(chat_id=3)) == SenderPeer(AuthorKind.CHAT, 3)

    def test_unknown_peer_is_dropped(self):
        assert peer_to_sender(None) is None
        assert peer_to_sender("someone") is None

    def test_post_with_replies(self):
        msg = SimpleNamespace(id=10, date=DATE, replies=SimpleNamespace(replies=4), from_id=None)
        converted = to_gateway_message(msg)
        assert converted.id == 10
        assert converted.date == DATE
        assert converted.reply_count == 4
        assert converted.sender is None

    def test_comment_without_replies_field(self):
        msg = SimpleNamespace(id=11, date=DATE, replies=None, from_id=PeerUser(user_id=42))
        converted = to_gateway_message(msg)
        assert converted.reply_count is None
        assert converted.sender == SenderPeer(AuthorKind.USER, 42)


# ---------------------------------------------------------------------------
# Entity resolution
# ---------------------------------------------------------------------------


class TestResolveEntity:
    @pytest.mark.asyncio
    async def test_resolved_entities_are_cached(self, gateway, client):
        first = await gateway.resolve_entity("@CoreChan")
        second = await gateway.resolve_entity("corechan")

        assert first is second
        client.get_entity.assert_awaited_once_with("corechan")

    @pytest.mark.asyncio
    async def test_cache_expiry_refetches(self, client, sleep):
        now = [0.0]
        cache = TTLCache(ttl_seconds=10, clock=lambda: now[0])
        gateway = TelethonGateway(client, entity_cache=cache, sleep=sleep)

        await gateway.resolve_entity("corechan")
        now[0] = 11.0
        await gateway.resolve_entity("corechan")

        assert client.get_entity.await_count == 2

    @pytest.mark.asyncio
    async def test_value_error_means_not_found(self, gateway, client):
        client.get_entity.side_effect = ValueError("No user has \"ghost\" as username")
        with pytest.raises(GatewayEntityNotFoundError):
            await gateway.resolve_entity("ghost")

    @pytest.mark.asyncio
    async def test_unoccupied_username(self, gateway, client):
        client.get_entity.side_effect = tg_errors.UsernameNotOccupiedError(request=None)
        with pytest.raises(GatewayEntityNotFoundError):
            await gateway.resolve_entity("ghost")


# ---------------------------------------------------------------------------
# History reads
# ---------------------------------------------------------------------------


class TestListMessages:
    @pytest.mark.asyncio
    async def test_post_page_reads_oldest_first(self, gateway, client):
        await gateway.list_messages("handle", min_id=40, limit=100)
        client.get_messages.assert_awaited_once_with("handle", limit=100, min_id=40, reverse=True)

    @pytest.mark.asyncio
    async def test_comment_page_uses_offset(self, gateway, client):
        await gateway.list_messages("handle", reply_to=7, offset_id=151, limit=100)
        client.get_messages.assert_awaited_once_with("handle", limit=100, reply_to=7, offset_id=151)

    @pytest.mark.asyncio
    async def test_zero_offset_is_omitted(self, gateway, client):
        await gateway.list_messages("handle", reply_to=7, offset_id=0, limit=100)
        client.get_messages.assert_awaited_once_with("handle", limit=100, reply_to=7)

    @pytest.mark.asyncio
    async def test_post_without_thread_is_empty(self, gateway, client):
        client.get_messages.side_effect = tg_errors.MsgIdInvalidError(request=None)
        assert await gateway.list_messages("handle", reply_to=7) == []

    @pytest.mark.asyncio
    async def test_request_delay(self, client, sleep):
        gateway = TelethonGateway(client, request_delay_seconds=0.5, sleep=sleep)
        await gateway.list_messages("handle", min_id=0)
        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_messages_are_converted(self, gateway, client):
        client.get_messages.return_value = [
            SimpleNamespace(id=1, date=DATE, replies=SimpleNamespace(replies=2), from_id=None),
        ]
        page = await gateway.list_messages("handle", min_id=0)
        assert [(m.id, m.reply_count) for m in page] == [(1, 2)]


class TestErrorTranslation:
    @pytest.mark.asyncio
    async def test_short_flood_wait_is_retried(self, gateway, client, sleep):
        client.get_messages.side_effect = [tg_errors.FloodWaitError(request=None, capture=5), []]

        assert await gateway.list_messages("handle", min_id=0) == []
        sleep.assert_awaited_once_with(6.0)

    @pytest.mark.asyncio
    async def test_long_flood_wait_fails_fast(self, gateway, client, sleep):
        client.get_messages.side_effect = tg_errors.FloodWaitError(request=None, capture=120)

        with pytest.raises(GatewayRateLimitError) as exc_info:
            await gateway.list_messages("handle", min_id=0)

        assert exc_info.value.retry_after == 120
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, gateway, client, sleep):
        client.get_messages.side_effect = tg_errors.FloodWaitError(request=None, capture=1)

        with pytest.raises(GatewayRateLimitError):
            await gateway.list_messages("handle", min_id=0)

        assert sleep.await_count == 2
        assert client.get_messages.await_count == 3

    @pytest.mark.asyncio
    async def test_private_channel(self, gateway, client):
        client.get_messages.side_effect = tg_errors.ChannelPrivateError(request=None)
        with pytest.raises(GatewayPermissionError):
            await gateway.list_messages("handle", min_id=0)

    @pytest.mark.asyncio
    async def test_other_rpc_errors(self, gateway, client):
        client.get_messages.side_effect = tg_errors.RPCError(request=None, message="INTERNAL", code=500)
        with pytest.raises(GatewayError):
            await gateway.list_messages("handle", min_id=0)

    @pytest.mark.asyncio
    async def test_connection_errors(self, gateway, client, sleep):
        """Persistent connection failures give up after ``max_retries``."""
        client.get_messages.side_effect = ConnectionError("reset")

        with pytest.raises(GatewayError):
            await gateway.list_messages("handle", min_id=0)

        assert client.get_messages.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_transient_server_errors_are_retried(self, gateway, client, sleep):
        client.get_messages.side_effect = [
            tg_errors.ServerError(request=None, message="INTERNAL"),
            tg_errors.TimedOutError(request=None, message="Timeout"),
            [SimpleNamespace(id=1, date=DATE, replies=None, from_id=None)],
        ]

        page = await gateway.list_messages("handle", min_id=0)

        assert [m.id for m in page] == [1]
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_transient_get_entity_is_retried(self, gateway, client, sleep):
        client.get_entity.side_effect = [ConnectionError("reset"), SimpleNamespace(id=555)]

        entity = await gateway.resolve_entity("corechan")

        assert entity.id == 555
        sleep.assert_awaited_once_with(1.0)
