"""Lifecycle ordering and failure handling, driven by recording fakes."""

import shutil
from pathlib import Path

import pytest

from clusterharness.broker.launcher import BrokerGroupLauncher
from clusterharness.coordination.server import CoordinationServiceLauncher
from clusterharness.core.config import HarnessSettings
from clusterharness.core.errors import ConfigError, StartupError
from clusterharness.core.port_allocator import PortAllocator
from clusterharness.frontend.app import CompatibilityMode
from clusterharness.harness import FixtureState
from tests.fakes import FakeCluster


class TestConstruction:
    def test_defaults(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness()

        assert harness.state is FixtureState.CONSTRUCTED
        assert harness.num_brokers == 1
        assert harness.front_end is None
        assert harness.front_end_url is None
        assert len(harness.ports) == 2
        assert fake_cluster.recorder.events == []

    def test_addresses_known_before_setup(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness(num_brokers=3, setup_front_end=True)

        coordination_port, *broker_ports, front_end_port = harness.ports
        assert len(set(harness.ports)) == 5
        assert harness.coordination_connect == f"localhost:{coordination_port}"
        assert harness.bootstrap_servers == ",".join(
            f"localhost:{port}" for port in broker_ports
        )
        assert harness.front_end_port == front_end_port
        assert harness.front_end_url == f"ws://localhost:{front_end_port}"
        assert [config.port for config in harness.broker_configs] == broker_ports
        assert all(
            config.coordination_connect == harness.coordination_connect
            for config in harness.broker_configs
        )

    def test_front_end_receives_cluster_settings(self, fake_cluster: FakeCluster):
        fake_cluster.harness(setup_front_end=True, compatibility_mode="backward")

        (front_end,) = fake_cluster.front_ends
        assert front_end.store_topic == "_schemas"
        assert front_end.compatibility_mode is CompatibilityMode.BACKWARD

    def test_negative_broker_count(self, fake_cluster: FakeCluster):
        with pytest.raises(ConfigError):
            fake_cluster.harness(num_brokers=-1)

    def test_unknown_compatibility_mode(self, fake_cluster: FakeCluster):
        with pytest.raises(ConfigError):
            fake_cluster.harness(setup_front_end=True, compatibility_mode="SIDEWAYS")

    def test_settings_supply_defaults(self, fake_cluster: FakeCluster):
        settings = HarnessSettings(num_brokers=2, setup_front_end=True)
        harness = fake_cluster.harness(None, None, settings=settings)
        assert harness.num_brokers == 2
        assert harness.front_end is not None

    def test_uses_given_port_allocator(self, fake_cluster: FakeCluster):
        allocator = PortAllocator()
        harness = fake_cluster.harness(num_brokers=2, port_allocator=allocator)
        assert allocator.allocated_ports == set(harness.ports)

        harness.setup()
        harness.teardown()
        assert allocator.allocated_ports == set()

    def test_ports_released_when_construction_fails(self, fake_cluster: FakeCluster):
        def front_end_factory(*args):
            raise ValueError("front-end misconfigured")

        allocator = PortAllocator()
        with pytest.raises(ValueError):
            fake_cluster.harness(
                setup_front_end=True,
                front_end_factory=front_end_factory,
                port_allocator=allocator,
            )
        assert allocator.allocated_ports == set()


class TestSetupAndTeardown:
    def test_lifecycle_order(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness(num_brokers=3, setup_front_end=True)

        harness.setup()
        assert harness.state is FixtureState.READY
        harness.teardown()

        assert harness.state is FixtureState.TORN_DOWN
        assert harness.teardown_warnings == []
        assert fake_cluster.recorder.events == [
            "coordination start",
            "client connect",
            "broker[0] start",
            "broker[1] start",
            "broker[2] start",
            "front-end start",
            "front-end stop",
            "broker[2] stop",
            "broker[1] stop",
            "broker[0] stop",
            "client close",
            "coordination stop",
        ]

    def test_lifecycle_order_without_front_end(self, fake_cluster: FakeCluster):
        with fake_cluster.harness(num_brokers=2):
            pass

        assert fake_cluster.recorder.events == [
            "coordination start",
            "client connect",
            "broker[0] start",
            "broker[1] start",
            "broker[1] stop",
            "broker[0] stop",
            "client close",
            "coordination stop",
        ]

    def test_broker_log_directories_removed(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness(num_brokers=2)
        harness.setup()
        assert sorted(path.name for path in fake_cluster.log_root.iterdir()) == [
            "broker-0",
            "broker-1",
        ]

        harness.teardown()
        assert list(fake_cluster.log_root.iterdir()) == []

    def test_teardown_twice_is_a_no_op(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness()
        harness.setup()
        harness.teardown()
        events = list(fake_cluster.recorder.events)

        harness.teardown()

        assert fake_cluster.recorder.events == events
        assert harness.state is FixtureState.TORN_DOWN

    def test_teardown_before_setup(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness(setup_front_end=True)
        harness.teardown()
        assert harness.state is FixtureState.TORN_DOWN
        assert fake_cluster.recorder.events == []

    def test_setup_twice(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness()
        harness.setup()
        try:
            with pytest.raises(RuntimeError):
                harness.setup()
        finally:
            harness.teardown()

    def test_setup_after_teardown(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness()
        harness.teardown()
        with pytest.raises(RuntimeError):
            harness.setup()

    def test_context_manager_tears_down_on_error(self, fake_cluster: FakeCluster):
        with pytest.raises(ValueError):
            with fake_cluster.harness() as harness:
                raise ValueError("test body failed")

        assert harness.state is FixtureState.TORN_DOWN
        assert fake_cluster.recorder.events[-1] == "coordination stop"


class TestSetupFailures:
    def test_zero_brokers_starts_nothing(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness(num_brokers=0, setup_front_end=True)
        assert harness.bootstrap_servers == ""

        with pytest.raises(ConfigError, match="at least one broker"):
            harness.setup()

        assert fake_cluster.recorder.events == []
        assert harness.state is FixtureState.TORN_DOWN

    def test_broker_failure_stops_started_components(self, fake_cluster: FakeCluster):
        fake_cluster.failing_brokers = {1}
        harness = fake_cluster.harness(num_brokers=3, setup_front_end=True)

        with pytest.raises(StartupError):
            harness.setup()

        assert fake_cluster.recorder.events == [
            "coordination start",
            "client connect",
            "broker[0] start",
            "broker[0] stop",
            "client close",
            "coordination stop",
        ]
        assert harness.state is FixtureState.TORN_DOWN
        assert list(fake_cluster.log_root.iterdir()) == []

    def test_coordination_failure(self, fake_cluster: FakeCluster):
        fake_cluster.coordination_fails = True
        harness = fake_cluster.harness(num_brokers=2)

        with pytest.raises(StartupError):
            harness.setup()

        assert fake_cluster.recorder.events == []
        assert fake_cluster.brokers == []

    def test_front_end_failure(self, fake_cluster: FakeCluster):
        fake_cluster.front_end_fails = True
        harness = fake_cluster.harness(num_brokers=2, setup_front_end=True)

        with pytest.raises(StartupError, match="front-end"):
            harness.setup()

        assert fake_cluster.recorder.events == [
            "coordination start",
            "client connect",
            "broker[0] start",
            "broker[1] start",
            "broker[1] stop",
            "broker[0] stop",
            "client close",
            "coordination stop",
        ]

    def test_broker_never_registers(self, fake_cluster: FakeCluster):
        fake_cluster.unregistered_brokers = {1}
        settings = HarnessSettings(broker_ready_timeout=0.2)
        harness = fake_cluster.harness(num_brokers=2, settings=settings)

        with pytest.raises(StartupError, match=r"\[1\] did not register"):
            harness.setup()

        assert fake_cluster.recorder.events[-1] == "coordination stop"


class TestTeardownWarnings:
    def test_hanging_broker_does_not_block_teardown(self, fake_cluster: FakeCluster):
        fake_cluster.hanging_brokers = {0}
        harness = fake_cluster.harness(num_brokers=2)
        harness.setup()

        harness.teardown()

        assert harness.state is FixtureState.TORN_DOWN
        assert [warning.component for warning in harness.teardown_warnings] == [
            "broker-0"
        ]
        assert fake_cluster.recorder.events[-3:] == [
            "broker[1] stop",
            "client close",
            "coordination stop",
        ]

    def test_client_close_failure(self, fake_cluster: FakeCluster):
        fake_cluster.client_close_fails = True
        harness = fake_cluster.harness()
        harness.setup()

        harness.teardown()

        assert [warning.component for warning in harness.teardown_warnings] == [
            "coordination-client"
        ]
        assert fake_cluster.recorder.events[-1] == "coordination stop"

    def test_missing_log_directory(self, fake_cluster: FakeCluster):
        harness = fake_cluster.harness(num_brokers=2)
        harness.setup()
        (fake_cluster.log_root / "broker-0").rmdir()

        harness.teardown()

        (warning,) = harness.teardown_warnings
        assert warning.component == "broker-0"
        assert "log directories" in str(warning)
        assert fake_cluster.recorder.events[-1] == "coordination stop"

    def test_log_removal_error_does_not_stop_teardown(self, fake_cluster: FakeCluster):
        fake_cluster.locked_log_brokers = {1}
        allocator = PortAllocator()
        harness = fake_cluster.harness(num_brokers=2, port_allocator=allocator)
        harness.setup()

        harness.teardown()

        assert harness.state is FixtureState.TORN_DOWN
        (warning,) = harness.teardown_warnings
        assert warning.component == "broker-1"
        assert fake_cluster.recorder.events[-2:] == ["client close", "coordination stop"]
        assert allocator.allocated_ports == set()

    def test_broker_launcher_error_does_not_stop_teardown(
        self, fake_cluster: FakeCluster
    ):
        class BrokenStopLauncher(BrokerGroupLauncher):
            def stop_all(self, brokers):
                raise RuntimeError("launcher lost track of its brokers")

        allocator = PortAllocator()
        harness = fake_cluster.harness(
            broker_launcher=BrokenStopLauncher(fake_cluster.broker_factory),
            port_allocator=allocator,
        )
        harness.setup()

        harness.teardown()

        assert harness.state is FixtureState.TORN_DOWN
        assert [warning.component for warning in harness.teardown_warnings] == [
            "brokers"
        ]
        assert fake_cluster.recorder.events[-2:] == ["client close", "coordination stop"]
        assert allocator.allocated_ports == set()

        harness.teardown()
        assert len(harness.teardown_warnings) == 1

    def test_coordination_data_dir_removal_failure(
        self,
        fake_cluster: FakeCluster,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ):
        data_root = tmp_path / "coordination"
        data_root.mkdir()
        harness = fake_cluster.harness(
            coordination_launcher=CoordinationServiceLauncher(data_root=data_root)
        )
        harness.setup()

        real_rmtree = shutil.rmtree

        def rmtree(path, *args, **kwargs):
            if Path(path).name.startswith("coordination-"):
                raise PermissionError(f"cannot remove {path}")
            return real_rmtree(path, *args, **kwargs)

        monkeypatch.setattr(shutil, "rmtree", rmtree)
        harness.teardown()

        assert harness.state is FixtureState.TORN_DOWN
        (warning,) = harness.teardown_warnings
        assert warning.component == "coordination"
        assert "cannot remove" in warning.message
        assert len(list(data_root.iterdir())) == 1
