import threading
from dataclasses import dataclass

from jsonargparse import CLI
from loguru import logger
from rich.console import Console
from rich.table import Table

from clusterharness.core.config import HarnessSettings
from clusterharness.core.logging import configure_logging_from_settings
from clusterharness.core.port_allocator import PortAllocator
from clusterharness.harness import ClusterHarness

console = Console()


def endpoints_table(harness: ClusterHarness) -> Table:
    table = Table(title="Cluster endpoints")
    table.add_column("Component")
    table.add_column("Address")
    table.add_row("coordination", harness.coordination_connect)
    for config in harness.broker_configs:
        table.add_row(f"broker-{config.broker_id}", config.endpoint)
    if harness.front_end_url is not None:
        table.add_row("front-end", harness.front_end_url)
    table.add_row("bootstrap servers", harness.bootstrap_servers)
    return table


@dataclass(slots=True)
class ClusterHarnessCLI:
    """Run ephemeral local clusters outside of a test session."""

    log_level: str | None = None

    def _settings(self) -> HarnessSettings:
        settings = HarnessSettings()
        if self.log_level is not None:
            settings = settings.model_copy(update={"log_level": self.log_level})
        configure_logging_from_settings(settings)
        return settings

    def up(
        self,
        num_brokers: int = 1,
        setup_front_end: bool = False,
        compatibility_mode: str = "NONE",
    ) -> None:
        """Start a cluster and keep it running until interrupted.

        Args:
            num_brokers: Number of brokers to start.
            setup_front_end: Also start the front-end service.
            compatibility_mode: Compatibility mode for the front-end service.
        """
        settings = self._settings()
        with ClusterHarness(
            num_brokers, setup_front_end, compatibility_mode, settings=settings
        ) as harness:
            console.print(endpoints_table(harness))
            try:
                threading.Event().wait()
            except KeyboardInterrupt:
                logger.warning("Interrupted, shutting the cluster down")

    def ports(self, count: int = 1) -> None:
        """Print free local ports.

        Args:
            count: How many distinct ports to find.
        """
        settings = self._settings()
        allocator = PortAllocator(
            settings.bind_host, retry_budget=settings.port_retry_budget
        )
        for port in allocator.allocate(count):
            console.print(port)


def main() -> None:
    CLI(ClusterHarnessCLI)  # type: ignore[no-untyped-call]


if __name__ == "__main__":
    main()
