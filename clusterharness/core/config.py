from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STORE_TOPIC = "_schemas"


class HarnessSettings(BaseSettings):
    """Cluster harness configuration settings.

    Every field can be overridden from the environment with the
    ``CLUSTERHARNESS_`` prefix (e.g. ``CLUSTERHARNESS_NUM_BROKERS=3``) or a
    ``.env`` file. Arguments passed to ``ClusterHarness`` win over both.
    """

    model_config = SettingsConfigDict(
        env_prefix="CLUSTERHARNESS_", env_file=".env", extra="ignore"
    )

    bind_host: str = Field(
        "127.0.0.1", description="Address every embedded service listens on."
    )
    advertised_host: str = Field(
        "localhost",
        description="Host name used in connect strings and broker endpoints.",
    )
    num_brokers: int = Field(1, description="Number of brokers in the cluster.")
    setup_front_end: bool = Field(
        False, description="Whether to run the front-end service."
    )
    compatibility_mode: str = Field(
        "NONE", description="Compatibility mode handed to the front-end service."
    )
    store_topic: str = Field(
        DEFAULT_STORE_TOPIC,
        description="Topic the front-end service keeps its records in.",
    )
    session_timeout_ms: int = Field(
        6000, gt=0, description="Coordination client session timeout."
    )
    connection_timeout_ms: int = Field(
        6000, gt=0, description="Coordination client connection timeout."
    )
    port_retry_budget: int = Field(
        10, gt=0, description="Attempts the port allocator makes before giving up."
    )
    broker_ready_timeout: float = Field(
        10.0,
        gt=0,
        description="Seconds to wait for all brokers to register after starting.",
    )
    data_root: Path | None = Field(
        None,
        description="Parent directory for data and log directories (system temp dir if unset).",
    )
    log_level: str = Field("INFO", description="Log level for configure_logging.")
    log_debug_scopes: tuple[str, ...] = Field(
        (), description="Module scopes that log at DEBUG regardless of log_level."
    )

    @field_validator("compatibility_mode")
    @classmethod
    def _upper_compatibility_mode(cls, value: str) -> str:
        return value.upper()
