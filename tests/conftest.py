"""Pytest configuration and fixtures for clusterharness testing.

Fixtures here start real embedded services on freshly allocated ports and
always stop them again, so a failing test never leaves a listener behind.
"""

from collections.abc import Iterator
from pathlib import Path

import pytest

from clusterharness.broker.config import BrokerConfig
from clusterharness.broker.server import EmbeddedBroker
from clusterharness.coordination.client import CoordinationClient
from clusterharness.coordination.server import EmbeddedCoordinationService
from clusterharness.core.port_allocator import port_range_context

from tests.fakes import FakeCluster, Recorder

pytest_plugins = ["clusterharness.testing"]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def fake_cluster(recorder: Recorder, tmp_path: Path) -> FakeCluster:
    """Factory for harnesses wired to recording fakes.

    Example Usage:
        def test_order(fake_cluster):
            harness = fake_cluster.harness(num_brokers=2)
            harness.setup()
            harness.teardown()
            assert fake_cluster.recorder.events[0] == "coordination start"
    """
    return FakeCluster(recorder=recorder, log_root=tmp_path / "logs")


@pytest.fixture
def ports() -> Iterator[list[int]]:
    """Eight free ports, released after the test."""
    with port_range_context(8) as allocated:
        yield allocated


@pytest.fixture
def coordination_service(
    ports: list[int], tmp_path: Path
) -> Iterator[EmbeddedCoordinationService]:
    """A running coordination service with its data directory under tmp_path."""
    data_root = tmp_path / "coordination"
    data_root.mkdir()
    service = EmbeddedCoordinationService(ports[0], data_root=data_root)
    service.start()
    try:
        yield service
    finally:
        service.stop()


@pytest.fixture
def coordination_client(
    coordination_service: EmbeddedCoordinationService,
) -> Iterator[CoordinationClient]:
    client = CoordinationClient(coordination_service.connect_string).connect()
    try:
        yield client
    finally:
        client.close()


@pytest.fixture
def broker(
    coordination_service: EmbeddedCoordinationService,
    ports: list[int],
    tmp_path: Path,
) -> Iterator[EmbeddedBroker]:
    """A running broker registered with ``coordination_service``."""
    log_root = tmp_path / "broker-logs"
    log_root.mkdir()
    config = BrokerConfig(
        broker_id=0,
        port=ports[1],
        coordination_connect=coordination_service.connect_string,
    )
    instance = EmbeddedBroker(config, log_root=log_root)
    instance.start()
    try:
        yield instance
    finally:
        instance.stop()
        instance.remove_log_directories()
