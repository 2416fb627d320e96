"""
Integration tests for the full backplane flow.

Two Backplane instances on one fake Redis server stand in for two agent
processes:
1. Agent registration and discovery
2. Request/response messaging
3. Context sharing and merging
4. Shutdown seen by the other process
"""

import pytest
import pytest_asyncio

from backplane.backplane import Backplane
from backplane.models import (
    AgentInfo,
    AgentMessage,
    ContextSyncEvent,
    MessageMetadata,
)


# ==================== Fixtures ====================

@pytest_asyncio.fixture
async def planner(make_client, config):
    """Backplane for the planning agent process."""
    bp = Backplane(config, client=make_client())
    await bp.connect()
    await bp.discovery.register_agent(
        AgentInfo(id="planner-1", role="planner", capabilities={"planning"})
    )
    yield bp
    await bp.cleanup()


@pytest_asyncio.fixture
async def coder(make_client, config):
    """Backplane for the coding agent process."""
    bp = Backplane(config, client=make_client())
    await bp.connect()
    await bp.discovery.register_agent(
        AgentInfo(id="coder-1", role="coder", capabilities={"python", "tests"})
    )
    yield bp
    await bp.cleanup()


def request(sender, content, **metadata):
    return AgentMessage(
        type="request",
        content=content,
        metadata=MessageMetadata(sender=sender, requires_response=True, **metadata),
    )


# ==================== Discovery Flow ====================

class TestDiscoveryFlow:
    """Agents in different processes find each other."""

    @pytest.mark.asyncio
    async def test_collaborators_visible_across_processes(self, planner, coder):
        found = await planner.find_collaborators(role="coder", capabilities=["python"])
        assert [a.id for a in found] == ["coder-1"]

        found = await coder.find_collaborators(role="planner")
        assert [a.id for a in found] == ["planner-1"]

    @pytest.mark.asyncio
    async def test_busy_agent_not_a_collaborator(self, planner, coder):
        await coder.discovery.update_agent_status("coder-1", "busy")

        assert await planner.find_collaborators(role="coder") == []
        agent = await planner.discovery.get_agent("coder-1")
        assert agent.status == "busy"


# ==================== Messaging Flow ====================

class TestMessagingFlow:
    """Request/response between two processes."""

    @pytest.mark.asyncio
    async def test_request_and_response(self, planner, coder, eventually):
        responses = []

        async def coder_inbox(envelope):
            if envelope.routing.target != "coder-1":
                return
            reply = AgentMessage(
                type="response",
                content={"status": "done", "files": ["api/users.py"]},
                metadata=MessageMetadata(sender="coder-1"),
            )
            await coder.send_message(
                reply,
                envelope.routing.source,
                correlation_id=envelope.id,
                context_id=envelope.metadata.context_id,
            )

        async def planner_inbox(envelope):
            if envelope.routing.target == "planner-1":
                responses.append(envelope)

        coder.broker.subscribe("coder-1", coder_inbox)
        planner.broker.subscribe("planner-1", planner_inbox)

        sent = await planner.send_message(
            request("planner-1", {"task": "Create REST endpoint for /users"}),
            "coder-1",
            context_id="users-api",
        )

        await eventually(lambda: responses)
        reply = responses[0]
        assert reply.message.type == "response"
        assert reply.metadata.correlation_id == sent.id
        assert reply.metadata.context_id == "users-api"
        assert reply.message.content["files"] == ["api/users.py"]

    @pytest.mark.asyncio
    async def test_broadcast_reaches_other_process(self, planner, coder, eventually):
        received = []

        async def coder_inbox(envelope):
            if envelope.routing.target == "coder-1":
                received.append(envelope.message.content)

        coder.broker.subscribe("coder-1", coder_inbox)

        envelopes = await planner.broadcast_message(
            AgentMessage(
                type="update",
                content="standup in 5",
                metadata=MessageMetadata(sender="planner-1"),
            ),
            filter=lambda agent: agent.id != "planner-1",
        )

        assert [e.routing.target for e in envelopes] == ["coder-1"]
        await eventually(lambda: received == ["standup in 5"])


# ==================== Context Flow ====================

class TestContextFlow:
    """Context handed from one process to another and merged back."""

    @pytest.mark.asyncio
    async def test_share_work_and_merge(self, planner, coder, eventually):
        seen = []
        coder.context.watch_context(seen.append)

        plan = [{"id": "n1", "type": "plan", "content": "Build /users"}]
        await planner.context.sync_context(
            ContextSyncEvent(type="update", agent_id="planner-1", context_id="users-api", nodes=plan)
        )

        branch_id = await planner.share_context("users-api", "coder-1")

        # Coder process sees the branch announcement
        await eventually(lambda: any(e.context_id == branch_id for e in seen))
        assert await coder.context.get_shared_context(branch_id) == plan

        # Coder works on its copy
        worked = plan + [{"id": "n2", "type": "result", "content": "Endpoint added"}]
        await coder.context.sync_context(
            ContextSyncEvent(type="update", agent_id="coder-1", context_id=branch_id, nodes=worked)
        )
        assert await planner.context.get_shared_context("users-api") == plan

        merged = await planner.context.merge_context_branch("users-api", "coder-1")
        assert merged.id == branch_id
        assert await coder.context.get_shared_context("coder-1") == worked

    @pytest.mark.asyncio
    async def test_delete_seen_by_other_process(self, planner, coder, eventually):
        seen = []
        coder.context.watch_context(seen.append)

        await planner.context.sync_context(
            ContextSyncEvent(
                type="update",
                agent_id="planner-1",
                context_id="scratch",
                nodes=[{"id": "n1"}],
            )
        )
        await planner.context.sync_context(
            ContextSyncEvent(type="delete", agent_id="planner-1", context_id="scratch")
        )

        await eventually(lambda: [e.type for e in seen] == ["update", "delete"])
        assert await coder.context.get_shared_context("scratch") == []


# ==================== Shutdown Flow ====================

class TestShutdownFlow:
    """A departing agent is seen leaving by the rest of the network."""

    @pytest.mark.asyncio
    async def test_graceful_shutdown(self, planner, coder, eventually):
        events = []
        planner.discovery.watch_agents(events.append)

        await coder.discovery.update_agent_status("coder-1", "offline")
        await coder.discovery.unregister_agent("coder-1")
        await coder.cleanup()

        def departures():
            return [e for e in events if e.type != "add"]

        await eventually(lambda: len(departures()) == 2)
        update, remove = departures()
        assert (update.type, remove.type) == ("update", "remove")
        assert update.agent.status == "offline"
        assert remove.agent.id == "coder-1"
        assert await planner.discovery.get_agent("coder-1") is None
        assert coder.discovery.heartbeating == set()
