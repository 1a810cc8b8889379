"""Unit tests for BinarySwitchExecutor."""

import pytest

from devnet_upgrader.errors import ErrorCategory, PartialSwitchError
from devnet_upgrader.models.spec import BinaryRef
from devnet_upgrader.services.switcher import BinarySwitchExecutor

from conftest import NEW_IMAGE, NEW_VERSION


@pytest.fixture
def switcher(fake_devnet):
    return BinarySwitchExecutor(fake_devnet, fake_devnet, poll_interval=0.01)


@pytest.fixture
def target():
    return BinaryRef(image=NEW_IMAGE, version=NEW_VERSION)


@pytest.mark.unit
class TestSwitch:

    @pytest.mark.asyncio
    async def test_switch_all_nodes(self, switcher, fake_devnet, devnet_ref, target):
        seen = []

        switches = await switcher.switch(devnet_ref, target, on_switch=seen.append)

        assert [s.node for s in switches] == ["node0", "node1", "node2", "node3"]
        assert all(not s.skipped and s.old_version == "v1.0.0" for s in switches)
        assert seen == switches
        assert set(fake_devnet.binaries.values()) == {NEW_IMAGE}
        assert ("stop", "node0") in fake_devnet.calls
        assert ("start", "node0") in fake_devnet.calls

    @pytest.mark.asyncio
    async def test_already_switched_nodes_untouched(self, switcher, fake_devnet, devnet_ref, target):
        fake_devnet.binaries["node0"] = NEW_IMAGE

        switches = await switcher.switch(devnet_ref, target)

        assert switches[0].skipped is True
        assert ("stop", "node0") not in fake_devnet.calls
        assert ("start", "node0") not in fake_devnet.calls

    @pytest.mark.asyncio
    async def test_stopped_node_is_started_without_stop(self, switcher, fake_devnet, devnet_ref, target):
        fake_devnet.running["node1"] = False

        await switcher.switch(devnet_ref, target)

        assert ("stop", "node1") not in fake_devnet.calls
        assert fake_devnet.running["node1"] is True

    @pytest.mark.asyncio
    async def test_partial_failure_reports_each_node(self, switcher, fake_devnet, devnet_ref, target):
        """Two of four nodes fail; the other two stay switched."""
        fake_devnet.fail_start = {"node2", "node3"}
        seen = []

        with pytest.raises(PartialSwitchError) as exc_info:
            await switcher.switch(devnet_ref, target, on_switch=seen.append)

        error = exc_info.value
        assert sorted(error.failures) == ["node2", "node3"]
        assert error.switched == ["node0", "node1"]
        assert error.terminal is True
        assert error.category == ErrorCategory.INCONSISTENT
        assert [s.node for s in seen] == ["node0", "node1"]

    @pytest.mark.asyncio
    async def test_rerun_after_partial_failure_only_touches_remaining(
        self, switcher, fake_devnet, devnet_ref, target
    ):
        fake_devnet.fail_start = {"node3"}
        with pytest.raises(PartialSwitchError):
            await switcher.switch(devnet_ref, target)
        fake_devnet.fail_start = set()
        fake_devnet.calls.clear()

        switches = await switcher.switch(devnet_ref, target)

        assert [s.node for s in switches if not s.skipped] == ["node3"]
        assert fake_devnet.calls == [("start", "node3")]


@pytest.mark.unit
class TestConfirm:

    @pytest.mark.asyncio
    async def test_confirm_all_on_target(self, switcher, fake_devnet, devnet_ref, target):
        for name in fake_devnet.binaries:
            fake_devnet.binaries[name] = NEW_IMAGE

        confirmed = await switcher.confirm(devnet_ref, target)

        assert confirmed == {f"node{i}": NEW_VERSION for i in range(4)}

    @pytest.mark.asyncio
    async def test_confirm_restarts_stopped_node(self, switcher, fake_devnet, devnet_ref, target):
        for name in fake_devnet.binaries:
            fake_devnet.binaries[name] = NEW_IMAGE
        fake_devnet.running["node2"] = False

        confirmed = await switcher.confirm(devnet_ref, target)

        assert len(confirmed) == 4
        assert fake_devnet.calls == [("restart", "node2")]
