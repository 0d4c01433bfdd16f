"""
pytest integration.

Two ways to get a running cluster around every test:

1. Subclass ``ClusterTestHarness`` and set class attributes::

       class TestSchemas(ClusterTestHarness):
           num_brokers = 3
           setup_front_end = True

           def test_register(self):
               assert self.cluster.bootstrap_servers.count(",") == 2

2. Load this module as a plugin (``pytest_plugins = ["clusterharness.testing"]``)
   and request the ``cluster_harness`` fixture, configured with the
   ``cluster`` marker::

       @pytest.mark.cluster(num_brokers=2)
       def test_two_brokers(cluster_harness):
           ...
"""

from collections.abc import Iterator
from typing import Any, ClassVar

import pytest

from clusterharness.harness import DEFAULT_NUM_BROKERS, ClusterHarness


class ClusterTestHarness:
    """Base class for xunit-style test classes that need a cluster per test."""

    num_brokers: ClassVar[int] = DEFAULT_NUM_BROKERS
    setup_front_end: ClassVar[bool] = False
    compatibility_mode: ClassVar[str] = "NONE"

    cluster: ClusterHarness

    def create_cluster(self) -> ClusterHarness:
        return ClusterHarness(
            self.num_brokers,
            self.setup_front_end,
            self.compatibility_mode,
        )

    def setup_method(self, method: Any) -> None:
        self.cluster = self.create_cluster()
        self.cluster.setup()

    def teardown_method(self, method: Any) -> None:
        cluster = getattr(self, "cluster", None)
        if cluster is not None:
            cluster.teardown()


def pytest_configure(config: Any) -> None:
    config.addinivalue_line(
        "markers",
        "cluster(num_brokers=1, setup_front_end=False, compatibility_mode='NONE'): "
        "shape of the cluster started by the cluster_harness fixture",
    )


@pytest.fixture
def cluster_harness(request: pytest.FixtureRequest) -> Iterator[ClusterHarness]:
    """A running cluster, torn down after the test."""
    marker = request.node.get_closest_marker("cluster")
    options = dict(marker.kwargs) if marker is not None else {}
    harness = ClusterHarness(**options)
    harness.setup()
    try:
        yield harness
    finally:
        harness.teardown()
