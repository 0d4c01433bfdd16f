import shutil
import socket

import pytest

from clusterharness.coordination.client import CoordinationClient
from clusterharness.coordination.server import (
    CoordinationServiceLauncher,
    EmbeddedCoordinationService,
    normalize_path,
    parent_path,
)
from clusterharness.core.errors import ServiceError, StartupError
from clusterharness.core.port_allocator import PortAllocator


class TestCoordinationServiceLifecycle:
    def test_start_creates_and_stop_removes_data_dir(self, ports, tmp_path):
        service = EmbeddedCoordinationService(ports[0], data_root=tmp_path)
        service.start()
        data_dir = service.data_dir
        assert service.is_running
        assert data_dir is not None and data_dir.is_dir()
        assert service.connect_string == f"localhost:{ports[0]}"

        service.stop()
        assert not service.is_running
        assert not data_dir.exists()
        assert list(tmp_path.iterdir()) == []

    def test_stop_is_idempotent(self, ports, tmp_path):
        launcher = CoordinationServiceLauncher(data_root=tmp_path)
        service = launcher.start(ports[0])
        launcher.stop(service)
        launcher.stop(service)
        assert not service.is_running

    def test_stop_releases_port(self, ports, tmp_path):
        service = EmbeddedCoordinationService(ports[0], data_root=tmp_path)
        service.start()
        service.stop()

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("127.0.0.1", ports[0]))

    def test_port_already_bound(self, ports, tmp_path):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", ports[0]))
            sock.listen()
            with pytest.raises(StartupError):
                CoordinationServiceLauncher(data_root=tmp_path).start(ports[0])
        assert list(tmp_path.iterdir()) == []

    def test_data_dir_cannot_be_created(self, ports, tmp_path):
        not_a_directory = tmp_path / "file"
        not_a_directory.write_text("occupied")
        service = EmbeddedCoordinationService(ports[0], data_root=not_a_directory)

        with pytest.raises(StartupError, match="data directory"):
            service.start()
        assert not service.is_running

    def test_data_dir_removal_failure_is_raised(self, ports, tmp_path, monkeypatch):
        service = EmbeddedCoordinationService(ports[0], data_root=tmp_path)
        service.start()
        data_dir = service.data_dir

        def rmtree(path, *args, **kwargs):
            raise PermissionError(f"cannot remove {path}")

        monkeypatch.setattr(shutil, "rmtree", rmtree)
        with pytest.raises(OSError, match="cannot remove"):
            CoordinationServiceLauncher().stop(service)

        assert not service.is_running
        assert service.data_dir is None
        assert data_dir is not None and data_dir.exists()
        assert PortAllocator().is_port_available(ports[0])
        service.stop()

    def test_failed_start_reports_startup_error_when_cleanup_fails(
        self, ports, tmp_path, monkeypatch
    ):
        def rmtree(path, *args, **kwargs):
            raise PermissionError(f"cannot remove {path}")

        monkeypatch.setattr(shutil, "rmtree", rmtree)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", ports[0]))
            sock.listen()
            with pytest.raises(StartupError, match="could not bind"):
                EmbeddedCoordinationService(ports[0], data_root=tmp_path).start()

    def test_stop_closes_open_sessions(self, coordination_service):
        client = CoordinationClient(coordination_service.connect_string).connect()
        assert coordination_service.session_count == 1

        coordination_service.stop()
        client.close()
        assert not client.is_connected


class TestCoordinationClient:
    def test_create_get_set(self, coordination_client):
        coordination_client.create("/config", {"retention": 1})
        assert coordination_client.get("/config") == {"retention": 1}

        stat = coordination_client.set("/config", {"retention": 2})
        assert stat["version"] == 1
        assert coordination_client.get("/config") == {"retention": 2}

    def test_set_with_stale_version(self, coordination_client):
        coordination_client.create("/config", 1)
        coordination_client.set("/config", 2, version=0)
        with pytest.raises(ServiceError) as exc_info:
            coordination_client.set("/config", 3, version=0)
        assert exc_info.value.code == "bad_version"

    def test_create_requires_parent(self, coordination_client):
        with pytest.raises(ServiceError) as exc_info:
            coordination_client.create("/brokers/ids/0")
        assert exc_info.value.code == "no_node"

        coordination_client.create("/brokers/ids/0", make_parents=True)
        assert coordination_client.exists("/brokers")
        assert coordination_client.get_children("/brokers/ids") == ["0"]

    def test_duplicate_create(self, coordination_client):
        coordination_client.create("/a")
        with pytest.raises(ServiceError) as exc_info:
            coordination_client.create("/a")
        assert exc_info.value.code == "node_exists"
        coordination_client.ensure_path("/a")

    def test_children_are_direct_only(self, coordination_client):
        coordination_client.create("/a/b/c", make_parents=True)
        coordination_client.create("/a/d")
        assert coordination_client.get_children("/a") == ["b", "d"]
        assert coordination_client.get_children("/") == ["a"]

    def test_delete(self, coordination_client):
        coordination_client.create("/a/b", make_parents=True)
        with pytest.raises(ServiceError) as exc_info:
            coordination_client.delete("/a")
        assert exc_info.value.code == "not_empty"

        coordination_client.delete("/a/b")
        coordination_client.delete("/a")
        assert not coordination_client.exists("/a")

    def test_ephemeral_nodes_vanish_with_session(
        self, coordination_service, coordination_client
    ):
        other = CoordinationClient(coordination_service.connect_string).connect()
        other.create("/brokers/ids/7", {"port": 1}, ephemeral=True, make_parents=True)
        assert coordination_client.get_children("/brokers/ids") == ["7"]

        other.close()
        assert coordination_client.get_children("/brokers/ids") == []
        assert coordination_client.exists("/brokers/ids")

    def test_ephemeral_nodes_cannot_have_children(self, coordination_client):
        coordination_client.create("/lock", ephemeral=True)
        with pytest.raises(ServiceError) as exc_info:
            coordination_client.create("/lock/child")
        assert exc_info.value.code == "no_children_for_ephemerals"

    def test_transaction_log_written(self, coordination_service, coordination_client):
        coordination_client.create("/a", "x")
        log = coordination_service.data_dir / "txnlog.jsonl"
        assert log.read_bytes().count(b"\n") == 1

    def test_invalid_path(self, coordination_client):
        with pytest.raises(ServiceError) as exc_info:
            coordination_client.get("relative")
        assert exc_info.value.code == "bad_path"

    def test_timeouts_are_configurable(self, coordination_service):
        client = CoordinationClient(
            coordination_service.connect_string,
            session_timeout_ms=1500,
            connection_timeout_ms=2500,
        )
        assert client.session_timeout_ms == 1500
        assert client.connection_timeout_ms == 2500
        with client:
            assert client.is_connected
        assert not client.is_connected

    def test_default_timeouts(self):
        client = CoordinationClient("localhost:1")
        assert client.session_timeout_ms == 6000
        assert client.connection_timeout_ms == 6000

    def test_close_without_connect(self):
        client = CoordinationClient("localhost:1")
        client.close()
        client.close()

    def test_connect_to_missing_service(self, ports):
        client = CoordinationClient(f"localhost:{ports[2]}", connection_timeout_ms=1000)
        with pytest.raises(StartupError):
            client.connect()
        client.close()


@pytest.mark.parametrize(
    "path, parent",
    [("/a", "/"), ("/a/b", "/a"), ("/a/b/c", "/a/b")],
)
def test_parent_path(path, parent):
    assert parent_path(normalize_path(path)) == parent


@pytest.mark.parametrize("path", ["", "a", "/a/", "//a", "/a//b"])
def test_normalize_path_rejects(path):
    with pytest.raises(ServiceError):
        normalize_path(path)
