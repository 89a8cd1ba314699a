"""Tests for a single backend session."""

import asyncio
from unittest.mock import patch

import pytest

from mcps.config import ServerDescriptor, ServerKind
from mcps.management.exceptions import (
    ConnectFailedError,
    ConnectTimeoutError,
    InvocationFailedError,
    ListFailedError,
)
from mcps.management.session import Session, SessionState


def make_descriptor(kind=ServerKind.PROCESS, name="git"):
    if kind is ServerKind.PROCESS:
        return ServerDescriptor(name=name, kind=kind, command="uvx", args=["mcp-server-git"])
    return ServerDescriptor(name=name, kind=kind, url="http://127.0.0.1:9000/mcp")


class TestSessionConnect:
    """Test Session.connect."""

    @pytest.mark.asyncio
    async def test_connect_fetches_tools_and_claims_processes(self, client_factory, tracker, fake_inspector):
        descriptor = make_descriptor()
        client_factory.configure(
            "git", on_connect=lambda d: fake_inspector.spawn(7001, "uvx mcp-server-git")
        )
        session = Session(descriptor, client_factory(descriptor), tracker=tracker)

        await session.connect(timeout=1)

        assert session.state is SessionState.CONNECTED
        assert session.owned_pids == {7001}
        assert session.tool_count == 2
        assert session.to_dict() == {"name": "git", "toolsCount": 2, "status": "connected"}

    @pytest.mark.asyncio
    async def test_network_session_never_tracks(self, client_factory, tracker, fake_inspector):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", on_connect=lambda d: fake_inspector.spawn(7002, "uvx x"))
        session = Session(descriptor, client_factory(descriptor), tracker=tracker)

        await session.connect(timeout=1)

        assert session.owned_pids == set()

    @pytest.mark.asyncio
    async def test_list_failure_keeps_session_usable(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", fail_list=RuntimeError("method not found"))
        session = Session(descriptor, client_factory(descriptor))

        await session.connect(timeout=1)

        assert session.state is SessionState.ERROR
        assert session.tool_count is None
        result = await session.call_tool("echo", {"message": "still works"})
        assert result["content"][0]["text"] == "still works"

    @pytest.mark.asyncio
    async def test_connect_timeout_cleans_up(self, client_factory, tracker, fake_inspector):
        descriptor = make_descriptor()
        client_factory.configure(
            "git",
            connect_delay=5,
            on_connect=lambda d: fake_inspector.spawn(7003, "uvx mcp-server-git"),
        )
        client = client_factory(descriptor)
        session = Session(descriptor, client, tracker=tracker)

        with pytest.raises(ConnectTimeoutError):
            await session.connect(timeout=0.05)

        assert session.state is SessionState.ERROR
        assert client.disconnect_calls == 1
        assert 7003 in fake_inspector.killed

    @pytest.mark.asyncio
    async def test_hung_tool_fetch_is_bounded(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", list_delay=60)
        session = Session(descriptor, client_factory(descriptor))

        await asyncio.wait_for(session.connect(timeout=0.05), timeout=1)

        assert session.state is SessionState.ERROR
        assert session.tool_count is None

    @pytest.mark.asyncio
    async def test_cancel_after_handshake_cleans_up(self, client_factory, tracker, fake_inspector):
        descriptor = ServerDescriptor(
            name="proc",
            kind=ServerKind.PROCESS,
            command="npx",
            args=["-y", "@scope/server-long-package-name"],
        )
        client_factory.configure(
            "proc",
            list_delay=60,
            on_connect=lambda d: fake_inspector.spawn(2001, "npm exec @scope/server-long-package-name"),
        )
        client = client_factory(descriptor)
        session = Session(descriptor, client, tracker=tracker)

        task = asyncio.create_task(session.connect(timeout=5))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert fake_inspector.killed == [2001]
        assert client.disconnect_calls == 1
        assert session.owned_pids == set()
        assert session.state is SessionState.ERROR

    @pytest.mark.asyncio
    async def test_connect_failure(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", fail_connect=OSError("connection refused"))
        session = Session(descriptor, client_factory(descriptor))

        with pytest.raises(ConnectFailedError, match="connection refused"):
            await session.connect(timeout=1)

        assert session.state is SessionState.ERROR


class TestSessionOperations:
    """Test listing, invocation and close."""

    @pytest.mark.asyncio
    async def test_list_tools_uses_cache(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client = client_factory(descriptor)
        session = Session(descriptor, client)
        await session.connect(timeout=1)

        await session.list_tools()
        await session.list_tools()

        assert client.list_calls == 1

    @pytest.mark.asyncio
    async def test_list_retry_recovers_state(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client = client_factory(descriptor)
        client.fail_list = RuntimeError("not ready")
        session = Session(descriptor, client)
        await session.connect(timeout=1)
        assert session.state is SessionState.ERROR

        client.fail_list = None
        tools = await session.list_tools()

        assert len(tools) == 2
        assert session.state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_list_failure_raises(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", fail_list=RuntimeError("boom"))
        session = Session(descriptor, client_factory(descriptor))
        await session.connect(timeout=1)

        with pytest.raises(ListFailedError):
            await session.list_tools()

    @pytest.mark.asyncio
    async def test_invocation_failure(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", fail_call=RuntimeError("Unknown tool: nope"))
        session = Session(descriptor, client_factory(descriptor))
        await session.connect(timeout=1)

        with pytest.raises(InvocationFailedError) as exc_info:
            await session.call_tool("nope", {})

        assert exc_info.value.message == "Unknown tool: nope"
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_call_logs_request_and_response(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        session = Session(descriptor, client_factory(descriptor))
        await session.connect(timeout=1)

        with patch("mcps.management.session.logger") as mock_logger:
            await session.call_tool("echo", {"message": "hi", "api_token": "abc"})

        events = [c.args[0] for c in mock_logger.info.call_args_list]
        assert events == ["Tool request", "Tool response"]
        request, response = (c.kwargs for c in mock_logger.info.call_args_list)
        assert request["server"] == "git"
        assert request["tool"] == "echo"
        assert request["args"] == {"message": "hi", "api_token": "[REDACTED]"}
        assert response["result"]["content"][0]["text"] == "hi"
        assert response["is_error"] is False

    @pytest.mark.asyncio
    async def test_failed_call_logs_failure(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", fail_call=RuntimeError("boom"))
        session = Session(descriptor, client_factory(descriptor))
        await session.connect(timeout=1)

        with patch("mcps.management.session.logger") as mock_logger:
            with pytest.raises(InvocationFailedError):
                await session.call_tool("echo", {})

        assert mock_logger.info.call_args.args[0] == "Tool request"
        assert mock_logger.warning.call_args.kwargs["error"] == "boom"

    @pytest.mark.asyncio
    async def test_close_kills_all_owned_even_if_one_is_gone(self, client_factory, tracker, fake_inspector):
        descriptor = make_descriptor()

        def spawn_two(_):
            fake_inspector.spawn(8001, "uvx mcp-server-git")
            fake_inspector.spawn(8002, "python mcp-server-git")

        client_factory.configure("git", on_connect=spawn_two)
        session = Session(descriptor, client_factory(descriptor), tracker=tracker)
        await session.connect(timeout=1)
        assert session.owned_pids == {8001, 8002}

        fake_inspector.gone.add(8002)
        await session.close()

        assert sorted(fake_inspector.killed) == [8001, 8002]
        assert session.owned_pids == set()

    @pytest.mark.asyncio
    async def test_close_does_not_block_on_hung_disconnect(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", disconnect_delay=10)
        session = Session(descriptor, client_factory(descriptor), disconnect_timeout=0.05)
        await session.connect(timeout=1)

        await asyncio.wait_for(session.close(), timeout=1)

    @pytest.mark.asyncio
    async def test_close_swallows_disconnect_errors(self, client_factory):
        descriptor = make_descriptor(ServerKind.HTTP)
        client_factory.configure("git", fail_disconnect=RuntimeError("broken pipe"))
        client = client_factory(descriptor)
        session = Session(descriptor, client)
        await session.connect(timeout=1)

        await session.close()

        assert client.disconnect_calls == 1
