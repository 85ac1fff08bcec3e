"""
Shared pytest fixtures for Dockyard tests.

Provides an in-process fake of the Docker SDK surface Dockyard uses. Helper
container execs are simulated against plain directories: named volumes live
under ``<tmp>/docker-volumes/<name>``, binds use their host path directly.
The stdin exec path runs over a real socket pair so ``frames_iter`` parses
genuine multiplexed frames.
"""

import io
import itertools
import posixpath
import socket
import struct
import tarfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from unittest.mock import patch

import pytest
from docker.errors import APIError, DockerException, NotFound
from typer.testing import CliRunner

from dockyard.cores.destination import DirectoryDestination
from dockyard.cores.helper_runner import HelperRunner
from dockyard.cores.snapshot_manager import SnapshotManager
from dockyard.cores.transfer_engine import TransferEngine
from dockyard.types import OutputDestinationRef

HELPER_IMAGE = "alpine:3.20"

_EXTRACT_ARGS = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
_STDOUT, _STDERR = 1, 2


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without a Docker daemon")


def _labels_match(labels: Dict[str, str], wanted: List[str]) -> bool:
    for item in wanted:
        key, sep, value = item.partition("=")
        if key not in labels or (sep and labels[key] != value):
            return False
    return True


# =============================================================================
# Fake Docker SDK
# =============================================================================


class FakeContainer:
    """Container as returned by ``client.containers``."""

    def __init__(self, daemon, name, image, labels=None, mounts=None, config=None,
                 host_config=None, status="created"):
        self.daemon = daemon
        self.id = f"{next(daemon.ids):064x}"
        self.name = name
        self.image = image
        self.labels = dict(labels or {})
        self.mounts = list(mounts or [])
        self.config = dict(config or {})
        self.host_config = dict(host_config or {})
        self.status = status
        self.create_kwargs = {}

    def inspect(self):
        config = {"Image": self.image, "Labels": dict(self.labels), "Env": [],
                  "Cmd": None, "Entrypoint": None, "WorkingDir": ""}
        config.update(self.config)
        host_config = {"NetworkMode": "bridge"}
        host_config.update(self.host_config)
        return {
            "Id": self.id,
            "Name": f"/{self.name}",
            "Image": f"sha256:{self.id[:12]}",
            "State": {"Running": self.status == "running", "Status": self.status},
            "Config": config,
            "HostConfig": host_config,
            "Mounts": [dict(m) for m in self.mounts],
        }

    def start(self):
        self.daemon.record("start", self.name)
        if self.name in self.daemon.fail_start:
            raise APIError(f"cannot start container {self.name}")
        self.status = "running"

    def remove(self, force=False, v=False):
        self.daemon.remove_container(self.id, force=force, v=v)


class FakeContainers:
    def __init__(self, daemon):
        self.daemon = daemon

    def create(self, image, command=None, name=None, labels=None, mounts=None,
               detach=False, **kwargs):
        daemon = self.daemon
        daemon.check_available()
        if name in daemon.fail_create or daemon.find(name) is not None:
            raise APIError(f"Conflict. The container name /{name} is already in use")
        inspect_mounts = []
        for mount in mounts or []:
            if (mount["Type"] == "bind" and not Path(mount["Source"]).exists()
                    and mount["Source"] not in daemon.host_paths):
                raise APIError(f"invalid mount config: bind source path does not exist: "
                               f"{mount['Source']}")
            inspect_mounts.append({
                "Type": mount["Type"],
                "Name": mount["Source"] if mount["Type"] == "volume" else "",
                "Source": mount["Source"],
                "Destination": mount["Target"],
                "RW": not mount.get("ReadOnly", False),
            })
        container = FakeContainer(
            daemon, name, image, labels=labels, mounts=inspect_mounts,
            config={"Cmd": command, "Env": list(kwargs.get("environment") or []),
                    "Entrypoint": kwargs.get("entrypoint"),
                    "WorkingDir": kwargs.get("working_dir") or ""},
            host_config={"NetworkMode": kwargs.get("network_mode") or kwargs.get("network")
                         or "default"},
        )
        container.create_kwargs = dict(kwargs, command=command, mounts=mounts)
        with daemon.lock:
            daemon.containers_by_id[container.id] = container
        daemon.record("create", name)
        return container

    def list(self, all=False, filters=None):
        self.daemon.check_available()
        wanted = list((filters or {}).get("label", []))
        with self.daemon.lock:
            containers = list(self.daemon.containers_by_id.values())
        return [c for c in containers
                if (all or c.status == "running") and _labels_match(c.labels, wanted)]

    def get(self, name):
        container = self.daemon.find(name)
        if container is None:
            raise NotFound(f"No such container: {name}")
        return container


class FakeImages:
    def __init__(self, daemon):
        self.daemon = daemon

    def get(self, image):
        if image not in self.daemon.image_names:
            raise NotFound(f"No such image: {image}")
        return image

    def pull(self, image, **kwargs):
        self.daemon.record("pull", image)
        self.daemon.image_names.add(image)
        return image


class FakeAPI:
    """Low-level ``client.api`` calls."""

    base_url = "http+docker://fake"

    def __init__(self, daemon):
        self.daemon = daemon

    def inspect_container(self, name):
        self.daemon.check_available()
        container = self.daemon.find(name)
        if container is None:
            raise NotFound(f"No such container: {name}")
        return container.inspect()

    def inspect_volume(self, name):
        if name not in self.daemon.volume_options:
            raise NotFound(f"get {name}: no such volume")
        return {"Name": name, "Driver": "local", "Options": self.daemon.volume_options[name]}

    def remove_container(self, container_id, force=False, v=False):
        self.daemon.remove_container(container_id, force=force, v=v)

    def exec_create(self, container_id, cmd, stdout=True, stderr=True, stdin=False, **kwargs):
        daemon = self.daemon
        with daemon.lock:
            container = daemon.containers_by_id.get(container_id)
            if container is None:
                raise NotFound(f"No such container: {container_id}")
            exec_id = f"exec-{next(daemon.ids)}"
            daemon.execs[exec_id] = {"container": container, "cmd": list(cmd),
                                     "Running": True, "ExitCode": None}
        daemon.record("exec", container.name, " ".join(cmd))
        return {"Id": exec_id}

    def exec_start(self, exec_id, stream=False, demux=False, socket=False, **kwargs):
        daemon = self.daemon
        record = daemon.execs[exec_id]
        if socket:
            return daemon.start_stdin_exec(record)
        code, out, err = daemon.run(record["container"], record["cmd"], b"")
        daemon.finish(record, code)
        if stream:
            frames = [(out[i:i + 4096], None) for i in range(0, len(out), 4096)]
            if err:
                frames.append((None, err))
            return iter(frames)
        return (out or None, err or None)

    def exec_inspect(self, exec_id):
        record = self.daemon.execs[exec_id]
        return {"Running": record["Running"], "ExitCode": record["ExitCode"]}


class FakeDocker:
    """Stand-in for ``docker.DockerClient`` whose helper image understands
    exactly the commands Dockyard issues."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.lock = threading.RLock()
        self.ids = itertools.count(1)
        self.containers_by_id: Dict[str, FakeContainer] = {}
        self.volume_options: Dict[str, Dict[str, str]] = {}
        self.image_names = set()
        self.events: List[Tuple[str, ...]] = []
        self.execs: Dict[str, dict] = {}
        self.removed: List[str] = []
        self.fail_reads = set()     # volume names / bind paths whose tar read fails
        self.fail_writes = set()    # volume names / bind paths whose extraction fails
        self.fail_start = set()
        self.fail_create = set()
        self.fail_remove = set()
        self.unavailable = False
        self.host_paths = set()     # bind sources that exist only on the daemon host
        self.on_exec = None         # callback(container, cmd) run before each command

        self.containers = FakeContainers(self)
        self.images = FakeImages(self)
        self.api = FakeAPI(self)

    def ping(self):
        self.check_available()
        return True

    # ---- setup helpers ----

    def volume_path(self, name: str) -> Path:
        path = self.root / "docker-volumes" / name
        path.mkdir(parents=True, exist_ok=True)
        with self.lock:
            self.volume_options.setdefault(name, {})
        return path

    def add_volume(self, name: str, files: Optional[Dict[str, bytes]] = None,
                   options: Optional[Dict[str, str]] = None) -> Path:
        path = self.volume_path(name)
        with self.lock:
            self.volume_options[name] = dict(options or {})
        for rel, data in (files or {}).items():
            target = path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        return path

    def add_container(self, name, image="nginx:latest", mounts=(), labels=None,
                      status="running", env=None, cmd=None, entrypoint=None,
                      working_dir="", network="bridge", config=None,
                      host_config=None) -> FakeContainer:
        """
        Register an application container.

        ``mounts`` holds ``(type, source, destination)`` tuples, for example
        ``("volume", "hello", "/hello")`` or ``("bind", "/srv/web", "/data")``.
        ``config`` and ``host_config`` are merged into the inspect payload.
        """
        inspect_mounts = []
        for kind, source, dest in mounts:
            if kind == "volume":
                self.volume_path(source)
                inspect_mounts.append({"Type": "volume", "Name": source,
                                       "Source": f"/var/lib/docker/volumes/{source}/_data",
                                       "Destination": dest, "RW": True})
            else:
                inspect_mounts.append({"Type": kind, "Source": source,
                                       "Destination": dest, "RW": True})
        container = FakeContainer(
            self, name, image, labels=labels, mounts=inspect_mounts, status=status,
            config=dict({"Env": list(env or []), "Cmd": cmd, "Entrypoint": entrypoint,
                         "WorkingDir": working_dir}, **(config or {})),
            host_config=dict({"NetworkMode": network}, **(host_config or {})),
        )
        with self.lock:
            self.containers_by_id[container.id] = container
            self.image_names.add(image)
        return container

    def find(self, name_or_id) -> Optional[FakeContainer]:
        with self.lock:
            if name_or_id in self.containers_by_id:
                return self.containers_by_id[name_or_id]
            for container in self.containers_by_id.values():
                if container.name == name_or_id:
                    return container
        return None

    def helpers(self) -> List[FakeContainer]:
        with self.lock:
            return [c for c in self.containers_by_id.values()
                    if "com.github.dockyard.managed-by" in c.labels]

    def record(self, *event):
        with self.lock:
            self.events.append(tuple(event))

    def check_available(self):
        if self.unavailable:
            raise DockerException("Error while fetching server API version: "
                                  "Connection refused")

    def remove_container(self, container_id, force=False, v=False):
        with self.lock:
            container = self.find(container_id)
            if container is None:
                raise NotFound(f"No such container: {container_id}")
            if container.name in self.fail_remove:
                raise APIError(f"removal of container {container.name} is already in progress")
            del self.containers_by_id[container.id]
            self.removed.append(container.name)
        self.record("remove", container.name)

    # ---- exec simulation ----

    def finish(self, record, code):
        with self.lock:
            record["ExitCode"] = code
            record["Running"] = False

    def start_stdin_exec(self, record):
        ours, theirs = socket.socketpair()

        def serve():
            data = bytearray()
            try:
                while True:
                    chunk = theirs.recv(65536)
                    if not chunk:
                        break
                    data.extend(chunk)
                code, out, err = self.run(record["container"], record["cmd"], bytes(data))
                self.finish(record, code)
                if out:
                    theirs.sendall(struct.pack(">BxxxL", _STDOUT, len(out)) + out)
                if err:
                    theirs.sendall(struct.pack(">BxxxL", _STDERR, len(err)) + err)
            except OSError:
                self.finish(record, 137)
            finally:
                theirs.close()

        threading.Thread(target=serve, daemon=True).start()
        return ours

    def host_path(self, container: FakeContainer, path: str) -> Path:
        """Directory backing ``path`` inside ``container``."""
        for mount in sorted(container.mounts, key=lambda m: -len(m["Destination"])):
            target = mount["Destination"]
            if path == target or path.startswith(target.rstrip("/") + "/"):
                if mount["Type"] == "volume":
                    base = self.volume_path(mount["Name"])
                else:
                    base = Path(mount["Source"])
                rel = posixpath.relpath(path, target)
                return base if rel == "." else base / rel
        raise AssertionError(f"{path} is not inside a mount of {container.name}")

    @staticmethod
    def mount_at(container: FakeContainer, path: str) -> dict:
        for mount in container.mounts:
            if mount["Destination"] == path:
                return mount
        raise AssertionError(f"nothing mounted at {path} in {container.name}")

    def run(self, container: FakeContainer, cmd: List[str],
            stdin: bytes) -> Tuple[int, bytes, bytes]:
        """Execute one helper command; returns ``(exit_code, stdout, stderr)``."""
        if self.on_exec is not None:
            self.on_exec(container, cmd)

        if cmd[:2] == ["tar", "-czf"]:
            mount = self.mount_at(container, cmd[4])
            if (mount["Name"] or mount["Source"]) in self.fail_reads:
                return 2, b"\x1f\x8b\x08\x00", b"tar: ./data: Read error: I/O error"
            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
                tar.add(str(self.host_path(container, cmd[4])), arcname=".")
            return 0, buffer.getvalue(), b""

        if cmd[:2] == ["tar", "-xzf"]:
            mount = self.mount_at(container, cmd[4])
            if (mount["Name"] or mount["Source"]) in self.fail_writes:
                return 2, b"", b"tar: write error: No space left on device"
            if not mount["RW"]:
                return 2, b"", b"tar: Read-only file system"
            try:
                with tarfile.open(fileobj=io.BytesIO(stdin), mode="r:gz") as tar:
                    tar.extractall(str(self.host_path(container, cmd[4])), **_EXTRACT_ARGS)
            except (tarfile.TarError, OSError, EOFError) as e:
                return 2, b"", f"tar: {e}".encode()
            return 0, b"", b""

        if cmd[:2] == ["mkdir", "-p"]:
            self.host_path(container, cmd[2]).mkdir(parents=True, exist_ok=True)
            return 0, b"", b""

        if cmd[:2] == ["rm", "-f"]:
            self.host_path(container, cmd[2]).unlink(missing_ok=True)
            return 0, b"", b""

        if cmd[:2] == ["test", "-f"]:
            return (0 if self.host_path(container, cmd[2]).is_file() else 1), b"", b""

        if cmd[:2] == ["sh", "-c"]:
            script, args = cmd[2], cmd[4:]
            if script == 'cat > "$1"':
                self.host_path(container, args[0]).write_bytes(stdin)
                return 0, b"", b""
            if 'mv "$1" "$2"' in script:
                partial = self.host_path(container, args[0])
                final = self.host_path(container, args[1])
                if final.exists():
                    return 1, b"", f"{args[1]} already exists\n".encode()
                partial.rename(final)
                return 0, b"", b""
            if "find" in script:
                base = self.host_path(container, args[0])
                if not base.is_dir():
                    return 0, b"", b""
                found = [posixpath.join(args[0], p.relative_to(base).as_posix())
                         for p in sorted(base.rglob("*")) if p.is_file()]
                return 0, "".join(f"{line}\n" for line in found).encode(), b""
            if 'cat "$1"' in script:
                path = self.host_path(container, args[0])
                if not path.is_file():
                    return 44, b"", b""
                return 0, path.read_bytes(), b""

        return 127, b"", f"sh: {cmd[0]}: not found".encode()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_docker(tmp_path):
    """Fake Docker client with the helper image already present."""
    client = FakeDocker(tmp_path)
    client.image_names.add(HELPER_IMAGE)
    return client


@pytest.fixture
def runner(fake_docker):
    return HelperRunner(fake_docker, image=HELPER_IMAGE, pid=4242, exec_timeout=5.0)


@pytest.fixture
def engine(runner):
    return TransferEngine(runner)


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return path


@pytest.fixture
def directory_destination(backup_dir):
    return DirectoryDestination(OutputDestinationRef.directory(str(backup_dir)))


@pytest.fixture
def manager(fake_docker, engine):
    return SnapshotManager(fake_docker, engine, mount_workers=2)


@pytest.fixture
def cli_runner():
    """Typer CLI runner for testing commands."""
    return CliRunner(env={"COLUMNS": "250"})


@pytest.fixture
def no_sleep():
    """Skip the exec polling delay."""
    with patch("dockyard.cores.helper_runner.time.sleep"):
        yield
