import io
import sys
from collections.abc import Iterator

import pytest
from loguru import logger

from clusterharness.core.config import HarnessSettings
from clusterharness.core.logging import configure_logging, configure_logging_from_settings


@pytest.fixture
def sink() -> Iterator[io.StringIO]:
    buffer = io.StringIO()
    try:
        yield buffer
    finally:
        logger.remove()
        logger.add(sys.stderr)


def log_as(module: str):
    return logger.patch(lambda record: record.update(name=module))


def test_level_filters_records(sink: io.StringIO):
    configure_logging("INFO", sink=sink)

    logger.debug("hidden")
    logger.info("shown")

    output = sink.getvalue()
    assert "hidden" not in output
    assert "shown" in output
    assert "MainThread" in output


def test_debug_scope_relative_to_package(sink: io.StringIO):
    handler_ids = configure_logging("INFO", debug_scopes=("broker",), sink=sink)
    assert len(handler_ids) == 2

    log_as("clusterharness.broker.server").debug("broker detail")
    log_as("clusterharness.coordination.server").debug("coordination detail")

    output = sink.getvalue()
    assert "broker detail" in output
    assert "coordination detail" not in output


def test_debug_scope_fully_qualified(sink: io.StringIO):
    configure_logging(
        "WARNING", debug_scopes=("clusterharness.coordination.server",), sink=sink
    )

    log_as("clusterharness.coordination.server").debug("tree changed")
    log_as("clusterharness.coordination.server").info("started")

    output = sink.getvalue()
    assert "tree changed" in output
    assert "started" not in output


def test_scopes_ignored_at_debug_level(sink: io.StringIO):
    assert len(configure_logging("DEBUG", debug_scopes=("broker",), sink=sink)) == 1


def test_from_settings(sink: io.StringIO):
    settings = HarnessSettings(log_level="ERROR", log_debug_scopes=("frontend",))
    configure_logging_from_settings(settings, sink=sink)

    logger.warning("not an error")
    log_as("clusterharness.frontend.app").debug("replayed")

    output = sink.getvalue()
    assert "not an error" not in output
    assert "replayed" in output
