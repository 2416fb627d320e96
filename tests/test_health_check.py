"""
Tests for the health check script.

Run with: pytest tests/test_health_check.py -v
"""

import pytest

from backplane.health_check import check_health
from backplane.models import AgentInfo


@pytest.fixture(autouse=True)
def no_agent_env(monkeypatch):
    monkeypatch.delenv("AGENT_ID", raising=False)
    monkeypatch.delenv("HOSTNAME", raising=False)


class TestCheckHealth:
    """Tests for check_health()."""

    @pytest.mark.asyncio
    async def test_healthy_without_agent(self, backplane, capsys):
        assert await check_health(backplane=backplane) is True
        assert capsys.readouterr().out.strip() == "HEALTHY"

    @pytest.mark.asyncio
    async def test_registered_agent(self, backplane, capsys):
        await backplane.discovery.register_agent(AgentInfo(id="worker-1", role="coder"))

        assert await check_health(agent_id="worker-1", backplane=backplane) is True
        assert "HEALTHY" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_agent_id_from_env(self, backplane, monkeypatch, capsys):
        monkeypatch.setenv("HOSTNAME", "container-abc")

        assert await check_health(backplane=backplane) is False
        assert "Agent container-abc not registered" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_unregistered_agent(self, backplane, capsys):
        assert await check_health(agent_id="ghost", backplane=backplane) is False
        assert "UNHEALTHY: Agent ghost not registered" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_offline_agent(self, backplane, capsys):
        await backplane.discovery.register_agent(AgentInfo(id="worker-1", role="coder"))
        await backplane.discovery.update_agent_status("worker-1", "offline")

        assert await check_health(agent_id="worker-1", backplane=backplane) is False
        assert "UNHEALTHY: Agent worker-1 is offline" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_redis_down(self, server, backplane, capsys):
        server.connected = False
        try:
            assert await check_health(backplane=backplane) is False
        finally:
            server.connected = True
        assert "UNHEALTHY: Redis connection failed" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_given_backplane_left_connected(self, backplane):
        await check_health(backplane=backplane)
        assert backplane.is_connected
