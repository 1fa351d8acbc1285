"""
Unit tests for the proactive messaging command-line tool.
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

import proactive_cli
from config import A365Config
from conversation_store import ConversationReference, FileConversationReferenceStore
from outbound import SendResult


@pytest_asyncio.fixture
async def store_path(tmp_path):
    path = tmp_path / "conversations.json"
    store = FileConversationReferenceStore(path)
    await store.save(
        ConversationReference(
            conversation_id="a:dm",
            service_url="https://smba.trafficmanager.net/amer/",
            user_aad_id="user-oid",
            updated_at=1_700_000_000_000,
        )
    )
    return str(path)


async def run_cli(argv, config=None):
    return await proactive_cli.run(proactive_cli.parse_args(argv), config or A365Config())


class TestStoreCommands:
    @pytest.mark.asyncio
    async def test_list(self, store_path, capsys):
        assert await run_cli(["--store", store_path, "list"]) == 0

        out = capsys.readouterr().out
        assert "a:dm" in out
        assert "user=user-oid" in out
        assert "2023-11-14T22:13:20+00:00" in out

    @pytest.mark.asyncio
    async def test_list_empty(self, tmp_path, capsys):
        assert await run_cli(["--store", str(tmp_path / "none.json"), "list"]) == 0
        assert "No conversation references" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_delete(self, store_path, capsys):
        assert await run_cli(["--store", store_path, "delete", "a:dm"]) == 0
        assert await run_cli(["--store", store_path, "delete", "a:dm"]) == 1
        assert await FileConversationReferenceStore(store_path).list() == []

    @pytest.mark.asyncio
    async def test_clear(self, store_path):
        assert await run_cli(["--store", store_path, "clear"]) == 0
        assert await FileConversationReferenceStore(store_path).list() == []


class TestNetworkCommands:
    @pytest.mark.asyncio
    async def test_token_without_configuration_fails(self, tmp_path, capsys):
        code = await run_cli(
            ["--store", str(tmp_path / "c.json"), "token"], A365Config(agent_identity="agent@contoso.com")
        )

        assert code == 1
        assert "Token acquisition failed" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_send_reports_result(self, store_path, capsys):
        send_text = AsyncMock(return_value=SendResult(ok=True, message_id="msg-1", conversation_id="a:dm"))

        with patch.object(proactive_cli.OutboundDeliveryResolver, "send_text", send_text):
            code = await run_cli(["--store", store_path, "send", "user:user-oid", "hello"])

        assert code == 0
        assert "Sent message msg-1 to a:dm" in capsys.readouterr().out
        send_text.assert_awaited_once_with("user:user-oid", "hello", service_url=None, tenant_id=None)

    @pytest.mark.asyncio
    async def test_send_failure(self, tmp_path, capsys):
        code = await run_cli(["--store", str(tmp_path / "c.json"), "send", "user-oid", "hello"])

        assert code == 1
        assert "DeliveryTargetUnresolved" in capsys.readouterr().err


def test_parse_args_requires_command():
    with pytest.raises(SystemExit):
        proactive_cli.parse_args([])
