"""
Unit tests for SnapshotManager.

Whole-container backups and restores against the fake Docker client.
"""

import json
import threading

import pytest

from dockyard.cores.descriptor import ContainerSnapshot
from dockyard.cores.snapshot_manager import SnapshotManager, snapshot_failures
from dockyard.exceptions import (
    DescriptorError,
    PartialBackupFailure,
    ResourceNotFound,
    RestoreFailed,
    TransferCancelled,
)


@pytest.fixture
def nginx(fake_docker, tmp_path):
    """nginx with a bind at /data and the volume 'hello' at /hello."""
    site = tmp_path / "site"
    site.mkdir()
    (site / "index.html").write_text("<h1>dockyard</h1>")
    fake_docker.add_volume("hello", {"greeting.txt": b"hello"})
    fake_docker.add_container(
        "nginx",
        image="nginx:1.27",
        mounts=[("bind", str(site), "/data"), ("volume", "hello", "/hello")],
        env=["NGINX_PORT=80"],
        cmd=["nginx", "-g", "daemon off;"],
        labels={"tier": "web"},
    )
    return site


@pytest.mark.unit
class TestBackupContainer:
    """Snapshot creation."""

    def test_layout(self, nginx, manager, directory_destination, backup_dir):
        snapshot, relative_path = manager.backup_container("nginx", directory_destination)

        assert relative_path.startswith("containers/nginx/")
        assert relative_path.endswith(".json")
        paths = directory_destination.list()
        assert len([p for p in paths if p.startswith("binds/_data/")]) == 1
        assert len([p for p in paths if p.startswith("volumes/hello/")]) == 1
        assert relative_path in paths

        document = json.loads((backup_dir / relative_path).read_text())
        assert document["name"] == "nginx"
        assert document["image"] == "nginx:1.27"
        assert {m["name"] for m in document["mounts"]} == {"_data", "hello"}
        for mount in document["mounts"]:
            assert directory_destination.exists(mount["archiveRelativePath"])

    def test_mount_order_follows_inspect(self, nginx, manager, directory_destination):
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        assert [m.destination for m in snapshot.mounts] == ["/data", "/hello"]

    def test_no_helpers_left(self, fake_docker, nginx, manager, directory_destination):
        manager.backup_container("nginx", directory_destination)
        assert fake_docker.helpers() == []

    def test_container_without_mounts(self, fake_docker, manager, directory_destination):
        fake_docker.add_container("stateless", image="traefik:3")
        snapshot, relative_path = manager.backup_container("stateless", directory_destination)
        assert snapshot.mounts == []
        assert directory_destination.list() == [relative_path]

    def test_missing_container(self, manager, directory_destination):
        with pytest.raises(ResourceNotFound):
            manager.backup_container("ghost", directory_destination)

    def test_mount_filter(self, nginx, manager, directory_destination):
        snapshot, _ = manager.backup_container("nginx", directory_destination,
                                               mount_filter=["hello"])
        assert [m.name for m in snapshot.mounts] == ["hello"]
        assert directory_destination.list("binds") == []

    def test_exclude_volumes(self, nginx, manager, directory_destination):
        snapshot, _ = manager.backup_container("nginx", directory_destination,
                                               exclude_volumes=["hello"])
        assert [m.name for m in snapshot.mounts] == ["_data"]

    def test_partial_failure_writes_no_descriptor(self, fake_docker, nginx, manager,
                                                  directory_destination):
        """A failed mount keeps the other archive but never publishes a descriptor."""
        fake_docker.fail_reads.add("hello")
        with pytest.raises(PartialBackupFailure) as excinfo:
            manager.backup_container("nginx", directory_destination)

        error = excinfo.value
        assert [mount.name for mount, _ in error.failures] == ["hello"]
        assert [entry.relative_path.split("/")[0] for entry in error.completed] == ["binds"]
        assert directory_destination.list("containers") == []
        assert directory_destination.list("volumes") == []
        assert len(directory_destination.list("binds")) == 1
        assert fake_docker.helpers() == []

        lines = snapshot_failures(error)
        assert len(lines) == 1 and lines[0].startswith("hello: ")

    def test_cancelled_backup_writes_no_descriptor(self, nginx, manager, directory_destination):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(PartialBackupFailure) as excinfo:
            manager.backup_container("nginx", directory_destination, cancel=cancel)
        assert all(isinstance(cause, TransferCancelled) for _, cause in excinfo.value.failures)
        assert directory_destination.list() == []

    def test_mounts_run_in_parallel(self, fake_docker, nginx, engine, directory_destination):
        """With two workers both mount reads are in flight at the same time."""
        barrier = threading.Barrier(2, timeout=5)

        def on_exec(container, cmd):
            if cmd[:2] == ["tar", "-czf"]:
                barrier.wait()

        fake_docker.on_exec = on_exec
        manager = SnapshotManager(fake_docker, engine, mount_workers=2)
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        assert len(snapshot.mounts) == 2


@pytest.mark.unit
class TestSnapshotsOnDisk:
    def test_list_and_latest(self, nginx, manager, directory_destination):
        _, first = manager.backup_container("nginx", directory_destination)
        _, second = manager.backup_container("nginx", directory_destination)
        assert manager.list_snapshots("nginx", directory_destination) == [first, second]
        assert manager.latest_snapshot("nginx", directory_destination) == second

    def test_latest_without_snapshots(self, manager, directory_destination):
        with pytest.raises(ResourceNotFound):
            manager.latest_snapshot("nginx", directory_destination)

    def test_load_snapshot(self, nginx, manager, directory_destination):
        snapshot, relative_path = manager.backup_container("nginx", directory_destination)
        loaded = manager.load_snapshot(relative_path, directory_destination)
        assert loaded.model_dump() == snapshot.model_dump()

    def test_load_corrupt_snapshot(self, manager, directory_destination):
        path = "containers/nginx/2026-01-01T00:00:00.000000+00:00.json"
        directory_destination.write_bytes(path, b'{"version": 9}')
        with pytest.raises(DescriptorError):
            manager.load_snapshot(path, directory_destination)


@pytest.mark.unit
class TestRestoreContainer:
    """Recreating containers from snapshots."""

    def test_restore_under_new_name(self, fake_docker, nginx, manager, directory_destination):
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        (nginx / "index.html").write_text("changed after backup")
        (fake_docker.volume_path("hello") / "greeting.txt").write_bytes(b"changed")

        container_id = manager.restore_container(snapshot, "nginx-restore",
                                                 directory_destination)

        restored = fake_docker.find(container_id)
        assert restored.name == "nginx-restore"
        assert restored.status == "running"
        assert restored.image == "nginx:1.27"
        assert restored.config["Env"] == ["NGINX_PORT=80"]
        assert restored.config["Cmd"] == ["nginx", "-g", "daemon off;"]
        assert restored.labels == {"tier": "web"}
        assert {m["Destination"] for m in restored.mounts} == {"/data", "/hello"}
        assert (nginx / "index.html").read_text() == "<h1>dockyard</h1>"
        assert (fake_docker.volume_path("hello") / "greeting.txt").read_bytes() == b"hello"
        assert fake_docker.helpers() == []

    def test_mounts_restored_before_start(self, fake_docker, nginx, manager,
                                          directory_destination):
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        fake_docker.events.clear()
        manager.restore_container(snapshot, "nginx-restore", directory_destination)

        kinds = [(e[0], e[1]) for e in fake_docker.events if e[0] in ("create", "start")]
        assert kinds[0] == ("create", "nginx-restore")
        assert kinds[-1] == ("start", "nginx-restore")
        extracts = [i for i, e in enumerate(fake_docker.events)
                    if e[0] == "exec" and e[2].startswith("tar -xzf")]
        start = fake_docker.events.index(("start", "nginx-restore"))
        assert len(extracts) == 2
        assert all(i < start for i in extracts)

    def test_missing_image_is_pulled(self, fake_docker, nginx, manager, directory_destination):
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        fake_docker.image_names.discard("nginx:1.27")
        manager.restore_container(snapshot, "nginx-restore", directory_destination)
        assert ("pull", "nginx:1.27") in fake_docker.events

    def test_default_name(self, fake_docker, manager, directory_destination):
        fake_docker.add_container("worker", image="busybox:1.36")
        snapshot, _ = manager.backup_container("worker", directory_destination)
        fake_docker.remove_container("worker")
        container_id = manager.restore_container(snapshot, None, directory_destination)
        assert fake_docker.find(container_id).name == "worker"

    def test_failed_mount_removes_container(self, fake_docker, nginx, manager,
                                            directory_destination):
        """The half-restored container is removed and never started."""
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        fake_docker.fail_writes.add("hello")

        with pytest.raises(RestoreFailed) as excinfo:
            manager.restore_container(snapshot, "nginx-restore", directory_destination)

        assert excinfo.value.mount.name == "hello"
        assert "mount hello" in str(excinfo.value)
        assert fake_docker.find("nginx-restore") is None
        assert ("start", "nginx-restore") not in fake_docker.events
        assert "nginx-restore" in fake_docker.removed
        assert fake_docker.helpers() == []

    def test_missing_archive_removes_container(self, fake_docker, nginx, manager,
                                               directory_destination, backup_dir):
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        (backup_dir / snapshot.mounts[1].archive_relative_path).unlink()

        with pytest.raises(RestoreFailed) as excinfo:
            manager.restore_container(snapshot, "nginx-restore", directory_destination)
        assert isinstance(excinfo.value.cause, ResourceNotFound)
        assert fake_docker.find("nginx-restore") is None

    def test_failed_start_removes_container(self, fake_docker, nginx, manager,
                                            directory_destination):
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        fake_docker.fail_start.add("nginx-restore")
        with pytest.raises(RestoreFailed, match="container start"):
            manager.restore_container(snapshot, "nginx-restore", directory_destination)
        assert fake_docker.find("nginx-restore") is None

    def test_name_conflict(self, nginx, manager, directory_destination):
        snapshot, _ = manager.backup_container("nginx", directory_destination)
        with pytest.raises(RestoreFailed):
            manager.restore_container(snapshot, "nginx", directory_destination)


@pytest.mark.unit
class TestCreateArgs:
    """Translation of a snapshot to container create arguments."""

    def make(self, **overrides):
        values = dict(name="app", image="app:1", command=["run"], env=["A=1"])
        values.update(overrides)
        return ContainerSnapshot(**values)

    def test_builtin_network_mode(self, manager):
        args = manager._create_args(self.make(network="host"), "app")
        assert args["network_mode"] == "host"
        assert "network" not in args

    def test_container_network_mode(self, manager):
        args = manager._create_args(self.make(network="container:vpn"), "app")
        assert args["network_mode"] == "container:vpn"

    def test_user_network(self, manager):
        args = manager._create_args(self.make(network="frontend"), "app")
        assert args["network"] == "frontend"
        assert "network_mode" not in args

    def test_optional_fields_omitted(self, manager):
        args = manager._create_args(self.make(command=[]), "app")
        assert "command" not in args
        assert "entrypoint" not in args
        assert "working_dir" not in args
        assert args["environment"] == ["A=1"]


@pytest.fixture
def web(fake_docker):
    """Reverse proxy with data and cache volumes, the Docker socket, a tmpfs
    mount, published ports and a restart policy."""
    fake_docker.add_volume("hello", {"greeting.txt": b"hello"})
    fake_docker.add_volume("cache", {"entry.bin": b"cached"})
    fake_docker.host_paths.add("/var/run/docker.sock")
    fake_docker.add_container(
        "web",
        image="traefik:3",
        mounts=[
            ("volume", "hello", "/hello"),
            ("volume", "cache", "/cache"),
            ("bind", "/var/run/docker.sock", "/var/run/docker.sock"),
            ("tmpfs", "", "/scratch"),
        ],
        config={"Hostname": "edge", "User": "1000:1000",
                "ExposedPorts": {"80/tcp": {}, "443/tcp": {}}},
        host_config={
            "PortBindings": {"80/tcp": [{"HostIp": "", "HostPort": "8080"}],
                             "443/tcp": None},
            "RestartPolicy": {"Name": "unless-stopped", "MaximumRetryCount": 0},
            "CapAdd": ["NET_ADMIN"],
            "Tmpfs": {"/run": "size=64m"},
        },
    )


@pytest.mark.unit
class TestMountTopology:
    """Mounts that are not archived still come back on restore."""

    def test_unarchived_mounts_recorded(self, web, manager, directory_destination):
        snapshot, _ = manager.backup_container("web", directory_destination,
                                               exclude_volumes=["cache"])
        assert [m.name for m in snapshot.mounts] == ["hello"]
        assert [(m.kind, m.destination) for m in snapshot.unarchived_mounts] == [
            ("volume", "/cache"),
            ("bind", "/var/run/docker.sock"),
            ("tmpfs", "/scratch"),
        ]
        assert snapshot.unarchived_mounts[0].source == "cache"
        assert snapshot.unarchived_mounts[2].source is None
        assert [p.split("/")[1] for p in directory_destination.list("volumes")] == ["hello"]

    def test_restore_recreates_every_mount(self, fake_docker, web, manager,
                                           directory_destination):
        snapshot, _ = manager.backup_container("web", directory_destination,
                                               exclude_volumes=["cache"])
        fake_docker.events.clear()
        container_id = manager.restore_container(snapshot, "web-restore",
                                                 directory_destination)

        restored = fake_docker.find(container_id)
        targets = {m["Target"]: m for m in restored.create_kwargs["mounts"]}
        assert set(targets) == {"/hello", "/cache", "/var/run/docker.sock", "/scratch"}
        assert targets["/cache"]["Type"] == "volume"
        assert targets["/var/run/docker.sock"]["Source"] == "/var/run/docker.sock"
        assert targets["/scratch"]["Type"] == "tmpfs"
        extracts = [e for e in fake_docker.events
                    if e[0] == "exec" and e[2].startswith("tar -xzf")]
        assert len(extracts) == 1
        assert (fake_docker.volume_path("cache") / "entry.bin").read_bytes() == b"cached"

    def test_restore_replays_host_config(self, fake_docker, web, manager,
                                         directory_destination):
        snapshot, _ = manager.backup_container("web", directory_destination)
        container_id = manager.restore_container(snapshot, "web-restore",
                                                 directory_destination)

        kwargs = fake_docker.find(container_id).create_kwargs
        assert kwargs["hostname"] == "edge"
        assert kwargs["user"] == "1000:1000"
        assert kwargs["ports"] == {"80/tcp": [("", "8080")]}
        assert kwargs["restart_policy"] == {"Name": "unless-stopped", "MaximumRetryCount": 0}
        assert kwargs["cap_add"] == ["NET_ADMIN"]
        assert kwargs["tmpfs"] == {"/run": "size=64m"}
        assert "privileged" not in kwargs

    def test_host_config_survives_descriptor(self, web, manager, directory_destination):
        snapshot, relative_path = manager.backup_container("web", directory_destination)
        loaded = manager.load_snapshot(relative_path, directory_destination)
        assert loaded.exposed_ports == ["443/tcp", "80/tcp"]
        assert loaded.port_bindings["80/tcp"][0].host_port == "8080"
        assert loaded.restart_policy.name == "unless-stopped"
        assert loaded.model_dump() == snapshot.model_dump()
