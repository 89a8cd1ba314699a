"""Tests for the connection pool."""

import asyncio

import pytest

from mcps.config import ConfigStore
from mcps.management.connection_pool import ConnectionPool, InitPhase
from mcps.management.exceptions import (
    ConfigNotFoundError,
    ConnectFailedError,
    ConnectTimeoutError,
)
from mcps.management.session import SessionState


@pytest.fixture
def pool(config_store, client_factory, tracker):
    return ConnectionPool(
        config_store,
        client_factory=client_factory,
        tracker=tracker,
        connect_timeout=1,
        init_timeout=0.5,
        disconnect_timeout=0.1,
    )


class TestGetOrCreate:
    """Test session creation and reuse."""

    @pytest.mark.asyncio
    async def test_second_call_reuses_session(self, pool, client_factory):
        first = await pool.get_or_create("alpha")
        second = await pool.get_or_create("alpha")

        assert first is second
        assert client_factory.connect_count("alpha") == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_connect_once(self, pool, client_factory):
        client_factory.configure("alpha", connect_delay=0.05)

        sessions = await asyncio.gather(*(pool.get_or_create("alpha") for _ in range(5)))

        assert all(s is sessions[0] for s in sessions)
        assert client_factory.connect_count("alpha") == 1
        assert len(client_factory.clients["alpha"]) == 1

    @pytest.mark.asyncio
    async def test_unknown_server(self, pool):
        with pytest.raises(ConfigNotFoundError) as exc_info:
            await pool.get_or_create("delta")

        assert exc_info.value.status_code == 404
        assert pool.sessions == {}

    @pytest.mark.asyncio
    async def test_disabled_server(self, write_config, client_factory, tracker):
        store = ConfigStore(write_config({"off": {"url": "http://h/mcp", "disabled": True}}))
        pool = ConnectionPool(store, client_factory=client_factory, tracker=tracker)

        with pytest.raises(ConfigNotFoundError, match="disabled"):
            await pool.get_or_create("off")

        assert client_factory.clients["off"] == []

    @pytest.mark.asyncio
    async def test_failed_connect_is_not_retained(self, pool, client_factory):
        client_factory.configure("beta", fail_connect=RuntimeError("spawn failed"))

        with pytest.raises(ConnectFailedError):
            await pool.get_or_create("beta")

        assert "beta" not in pool.sessions

    @pytest.mark.asyncio
    async def test_timeout_is_not_retained(self, pool, client_factory):
        client_factory.configure("beta", connect_delay=5)

        with pytest.raises(ConnectTimeoutError):
            await pool.get_or_create("beta", connect_timeout=0.05)

        assert "beta" not in pool.sessions
        assert client_factory.clients["beta"][0].disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_list_failure_still_registers(self, pool, client_factory):
        client_factory.configure("alpha", fail_list=RuntimeError("no tools"))

        session = await pool.get_or_create("alpha")

        assert pool.sessions["alpha"] is session
        assert session.state is SessionState.ERROR


class TestClose:
    """Test close and close_all."""

    @pytest.mark.asyncio
    async def test_close_returns_presence(self, pool):
        await pool.get_or_create("alpha")

        assert await pool.close("alpha") is True
        assert await pool.close("alpha") is False
        assert pool.sessions == {}

    @pytest.mark.asyncio
    async def test_close_all_empties_even_when_disconnect_throws(self, pool, client_factory):
        client_factory.configure("alpha", fail_disconnect=RuntimeError("broken"))
        client_factory.configure("beta", disconnect_delay=5)
        await pool.get_or_create("alpha")
        await pool.get_or_create("beta")
        await pool.get_or_create("gamma")

        await pool.close_all()

        assert pool.sessions == {}

    @pytest.mark.asyncio
    async def test_close_kills_owned_processes(self, write_config, client_factory, tracker, fake_inspector):
        store = ConfigStore(write_config({"git": {"command": "uvx", "args": ["mcp-server-git"]}}))
        pool = ConnectionPool(store, client_factory=client_factory, tracker=tracker)
        client_factory.configure(
            "git", on_connect=lambda d: fake_inspector.spawn(9001, "uvx mcp-server-git")
        )
        await pool.get_or_create("git")

        await pool.close("git")

        assert fake_inspector.killed == [9001]

    @pytest.mark.asyncio
    async def test_cancelled_connect_leaves_no_processes(self, write_config, client_factory, tracker, fake_inspector):
        store = ConfigStore(write_config({
            "proc": {"command": "npx", "args": ["-y", "@scope/server-long-package-name"]}
        }))
        pool = ConnectionPool(store, client_factory=client_factory, tracker=tracker, disconnect_timeout=0.1)
        client_factory.configure(
            "proc",
            list_delay=60,
            on_connect=lambda d: fake_inspector.spawn(2001, "npm exec @scope/server-long-package-name"),
        )

        task = asyncio.create_task(pool.get_or_create("proc"))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await pool.close_all()

        assert fake_inspector.killed == [2001]
        assert client_factory.clients["proc"][0].disconnect_calls == 1
        assert pool.sessions == {}


class TestInitializeAll:
    """Test bulk initialization."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, pool, client_factory):
        client_factory.configure("beta", fail_connect=RuntimeError("exit code 1"))

        report = await pool.initialize_all()

        assert sorted(pool.sessions) == ["alpha", "gamma"]
        assert len(pool.sessions) == 2
        assert report.failed == ["beta"]
        assert report.succeeded == ["alpha", "gamma"]
        assert pool.init_phase is InitPhase.READY
        assert pool.last_report is report

    @pytest.mark.asyncio
    async def test_slow_backend_bounded_by_init_timeout(self, pool, client_factory):
        client_factory.configure("alpha", connect_delay=10)

        report = await asyncio.wait_for(pool.initialize_all(), timeout=5)

        assert report.failed == ["alpha"]
        assert "Timed out" in report.outcomes[0].message
        assert sorted(pool.sessions) == ["beta", "gamma"]

    @pytest.mark.asyncio
    async def test_hung_tool_listing_bounded_by_init_timeout(self, pool, client_factory):
        client_factory.configure("alpha", list_delay=60)

        report = await asyncio.wait_for(pool.initialize_all(), timeout=5)

        assert pool.init_phase is InitPhase.READY
        assert report.failed == []
        assert report.outcomes[0].message == "Connected, but listing tools failed"
        assert pool.sessions["alpha"].state is SessionState.ERROR

    @pytest.mark.asyncio
    async def test_skips_disabled(self, write_config, client_factory, tracker):
        store = ConfigStore(write_config({
            "on": {"url": "http://h/mcp"},
            "off": {"url": "http://h/mcp", "disabled": True},
        }))
        pool = ConnectionPool(store, client_factory=client_factory, tracker=tracker)

        await pool.initialize_all()

        assert list(pool.sessions) == ["on"]

    @pytest.mark.asyncio
    async def test_status_flags(self, pool):
        status = pool.get_status()
        assert status["phase"] == "idle"
        assert status["initialized"] is False

        await pool.initialize_all()

        status = pool.get_status()
        assert status["initialized"] is True
        assert status["initializing"] is False
        assert len(status["connections"]) == 3


class TestRestart:
    """Test single and full restart."""

    @pytest.mark.asyncio
    async def test_restart_unknown_leaves_others(self, pool, client_factory):
        alpha = await pool.get_or_create("alpha")

        with pytest.raises(ConfigNotFoundError) as exc_info:
            await pool.restart("unknown")

        assert exc_info.value.status_code == 404
        assert pool.sessions == {"alpha": alpha}
        assert client_factory.clients["alpha"][0].disconnect_calls == 0

    @pytest.mark.asyncio
    async def test_restart_reconnects_in_place(self, pool, client_factory):
        old = await pool.get_or_create("alpha")
        beta = await pool.get_or_create("beta")

        new = await pool.restart("alpha")

        assert new is not old
        assert pool.sessions["alpha"] is new
        assert pool.sessions["beta"] is beta
        assert client_factory.connect_count("alpha") == 2

    @pytest.mark.asyncio
    async def test_restart_all(self, pool, client_factory):
        await pool.initialize_all()
        phases = []
        original = pool.close_all

        async def record_close_all():
            phases.append(pool.init_phase)
            await original()

        pool.close_all = record_close_all

        report = await pool.restart_all()

        assert phases == [InitPhase.INITIALIZING]
        assert pool.init_phase is InitPhase.READY
        assert len(report.succeeded) == 3
        assert client_factory.connect_count("alpha") == 2


class TestDetails:
    """Test status aggregation."""

    @pytest.mark.asyncio
    async def test_cached_counts_are_not_refetched(self, pool, client_factory):
        await pool.get_or_create("alpha")
        client = client_factory.clients["alpha"][0]

        details = await pool.get_details(include_counts=True)

        assert details == [{"name": "alpha", "toolsCount": 2, "status": "connected"}]
        assert client.list_calls == 1

    @pytest.mark.asyncio
    async def test_errored_session_reports_null_count(self, pool, client_factory):
        client_factory.configure("alpha", fail_list=RuntimeError("no"))
        await pool.get_or_create("alpha")

        details = await pool.get_details(include_counts=True)

        assert details == [{"name": "alpha", "toolsCount": None, "status": "error"}]

    @pytest.mark.asyncio
    async def test_call_and_list_delegate(self, pool):
        result = await pool.call_tool("alpha", "add", {"a": 2, "b": 3})
        tools = await pool.list_tools("alpha")

        assert result["content"][0]["text"] == "5"
        assert [t["name"] for t in tools] == ["echo", "add"]
