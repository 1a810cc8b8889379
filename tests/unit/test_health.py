"""Unit tests for HealthVerifier."""

from unittest.mock import AsyncMock

import pytest

from devnet_upgrader.errors import NodeUnavailable, NodeUnhealthy
from devnet_upgrader.models.chain import NodeHealth
from devnet_upgrader.services.health import HealthVerifier

from conftest import NEW_IMAGE


@pytest.fixture
def switched(fake_devnet):
    for name in fake_devnet.binaries:
        fake_devnet.binaries[name] = NEW_IMAGE
    return fake_devnet


@pytest.mark.unit
class TestHealthVerifier:

    @pytest.mark.asyncio
    async def test_waits_for_target_height(self, switched, devnet_ref):
        verifier = HealthVerifier(switched, switched, failure_threshold=3, poll_interval=0.01)

        height = await verifier.verify(devnet_ref, 120)

        assert height >= 120

    @pytest.mark.asyncio
    async def test_threshold_consecutive_failures(self, switched, devnet_ref):
        switched.unhealthy = {"node1"}
        verifier = HealthVerifier(switched, switched, failure_threshold=3, poll_interval=0.01)

        with pytest.raises(NodeUnhealthy, match="node1 unhealthy 3 times"):
            await verifier.verify(devnet_ref, 10_000)

    @pytest.mark.asyncio
    async def test_transient_failure_resets(self, switched, devnet_ref):
        """Unhealthy, healthy, unhealthy never reaches a threshold of 2."""
        nodes = await switched.list_nodes(devnet_ref)
        checker = AsyncMock()
        flaky = iter([(False, 0), (True, 150), (False, 0), (True, 150), (True, 200)])

        async def check(devnet, node):
            if node.name == "node0":
                healthy, height = next(flaky)
                return NodeHealth(node="node0", healthy=healthy, height=height)
            return NodeHealth(node=node.name, healthy=True, height=150)

        checker.check.side_effect = check
        verifier = HealthVerifier(switched, checker, failure_threshold=2, poll_interval=0.01)

        height = await verifier.verify(devnet_ref, 200)

        assert height == 200
        assert checker.check.await_count == len(nodes) * 5

    @pytest.mark.asyncio
    async def test_unreachable_after_answering_counts_as_unhealthy(self, switched, devnet_ref):
        answered = set()

        async def check(devnet, node):
            if node.name in answered:
                raise NodeUnavailable("no route to host")
            answered.add(node.name)
            return NodeHealth(node=node.name, healthy=True, height=90)

        checker = AsyncMock()
        checker.check.side_effect = check
        verifier = HealthVerifier(switched, checker, failure_threshold=1, poll_interval=0.01)

        with pytest.raises(NodeUnhealthy, match="no route to host"):
            await verifier.verify(devnet_ref, 100)

    @pytest.mark.asyncio
    async def test_slow_restart_not_counted_until_first_answer(self, switched, devnet_ref):
        """A container still booting is waited on past the failure threshold."""
        boots = {"node2": 5}

        async def check(devnet, node):
            if boots.get(node.name):
                boots[node.name] -= 1
                raise NodeUnavailable("connection refused")
            return await switched.check(devnet, node)

        checker = AsyncMock()
        checker.check.side_effect = check
        verifier = HealthVerifier(switched, checker, failure_threshold=2, poll_interval=0.01)

        height = await verifier.verify(devnet_ref, 120)

        assert height >= 120
        assert boots["node2"] == 0
