"""
Shared pytest configuration.

Most tests run against an in-memory fake of the Docker SDK (FakeDockerClient)
so they need no daemon. Tests marked @pytest.mark.docker use a real daemon
and are skipped when none is reachable.
"""

import io
import itertools
import tarfile
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from previewbox.config import Config


def pytest_collection_modifyitems(config, items):
    """Skip docker tests when no daemon is reachable."""
    skip_docker = pytest.mark.skip(reason="Docker not available")
    has_docker = None

    for item in items:
        if "docker" in item.keywords:
            if has_docker is None:
                has_docker = _check_docker()
            if not has_docker:
                item.add_marker(skip_docker)


def _check_docker() -> bool:
    try:
        import docker
        docker.from_env().ping()
        return True
    except Exception:
        return False


# =============================================================================
# FAKE DOCKER SDK
# =============================================================================

class FakeResponse:
    """Just enough of a requests.Response for APIError.status_code."""

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        self.url = "http://docker/fake"


def already_running_error() -> APIError:
    return APIError("container already started", response=FakeResponse(304, "Not Modified"))


def port_conflict_error(port: int = 8100) -> APIError:
    return APIError(
        f"driver failed programming external connectivity: Bind for 0.0.0.0:{port} failed: "
        "port is already allocated"
    )


class ExecRunResult:
    def __init__(self, exit_code: int, output: bytes = b""):
        self.exit_code = exit_code
        self.output = output


class FakeContainer:
    """In-memory container: tracks state, port bindings and /app files."""

    def __init__(self, client: "FakeDockerClient", container_id: str, name: str, kwargs: Dict):
        self.client = client
        self.id = container_id
        self.name = name
        self.kwargs = kwargs
        self.removed = False
        self.files: Dict[str, bytes] = {}
        self.exec_run_calls: List[Tuple] = []

        binds = [
            f"{host}:{spec['bind']}:{spec.get('mode', 'rw')}"
            for host, spec in (kwargs.get("volumes") or {}).items()
        ]
        self.port_spec = dict(kwargs.get("ports") or {})
        self.attrs: Dict = {
            "Id": container_id,
            "Name": f"/{name}",
            "State": {"Running": False, "Paused": False, "Status": "created"},
            "HostConfig": {"Binds": binds},
            "NetworkSettings": {"Ports": {}},
        }

    # State helpers

    def _set_state(self, running: bool, paused: bool, status: str) -> None:
        self.attrs["State"] = {"Running": running, "Paused": paused, "Status": status}

    def _check_exists(self) -> None:
        if self.removed:
            raise NotFound(f"No such container: {self.name}")

    # SDK surface

    def reload(self) -> None:
        self._check_exists()

    def start(self) -> None:
        self._check_exists()
        if self.client.start_errors:
            raise self.client.start_errors.pop(0)
        self._set_state(True, False, "running")
        if not self.client.hide_port_mapping:
            self.attrs["NetworkSettings"]["Ports"] = {
                key: [{"HostIp": "0.0.0.0", "HostPort": str(port)}]
                for key, port in self.port_spec.items()
            }

    def stop(self, timeout: int = 10) -> None:
        self._check_exists()
        self.client.stopped.append(self.name)
        self._set_state(False, False, "exited")

    def remove(self, force: bool = False) -> None:
        self._check_exists()
        self.removed = True
        self.client.removed.append(self.name)
        self.client.by_name.pop(self.name, None)

    def pause(self) -> None:
        self._check_exists()
        self._set_state(True, True, "paused")

    def unpause(self) -> None:
        self._check_exists()
        self._set_state(True, False, "running")

    def exec_run(self, cmd, user: Optional[str] = None):
        self.exec_run_calls.append((cmd, user))
        return ExecRunResult(self.client.exec_run_exit_code)

    def put_archive(self, path: str, data: bytes) -> bool:
        self._check_exists()
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            for member in tar.getmembers():
                if member.isfile():
                    extracted = tar.extractfile(member)
                    self.files[member.name] = extracted.read() if extracted else b""
                    self.client.archive_owners[member.name] = (member.uid, member.gid)
        self.client.put_archive_calls.append(path)
        return True

    def get_archive(self, path: str):
        self._check_exists()
        workdir = self.kwargs.get("working_dir", "/app").rstrip("/") + "/"
        relative = path[len(workdir):] if path.startswith(workdir) else path
        if relative not in self.files:
            raise NotFound(f"Could not find the file {path} in container {self.name}")

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            data = self.files[relative]
            info = tarfile.TarInfo(name=relative.rsplit("/", 1)[-1])
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        raw = buffer.getvalue()
        return iter([raw[:10], raw[10:]]), {"name": relative}


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self._client = client

    def get(self, name: str) -> FakeContainer:
        container = self._client.by_name.get(name)
        if container is None:
            raise NotFound(f"No such container: {name}")
        return container

    def create(self, **kwargs) -> FakeContainer:
        name = kwargs["name"]
        if name in self._client.by_name:
            raise APIError(f"Conflict. The container name \"/{name}\" is already in use")
        container = FakeContainer(self._client, f"cid{next(self._client._ids)}", name, kwargs)
        self._client.by_name[name] = container
        self._client.created.append(container)
        return container


class FakeImages:
    def __init__(self, available: Iterable[str]):
        self.available = set(available)
        self.pulled: List[str] = []

    def get(self, image: str):
        if image not in self.available:
            raise ImageNotFound(f"No such image: {image}")
        return image

    def pull(self, image: str):
        self.pulled.append(image)
        self.available.add(image)
        return image


ExecHandler = Callable[[List[str]], Tuple[Iterable[bytes], Optional[int]]]


class FakeAPI:
    """Low-level exec API used by CommandExecutor."""

    def __init__(self, client: "FakeDockerClient"):
        self._client = client
        self._execs: Dict[str, Dict] = {}
        self._ids = itertools.count(1)

    def exec_create(self, container_id: str, cmd, stdout=True, stderr=True, workdir=None, environment=None):
        exec_id = f"exec{next(self._ids)}"
        self._execs[exec_id] = {"cmd": list(cmd), "workdir": workdir, "env": environment}
        self._client.exec_calls.append(self._execs[exec_id])
        return {"Id": exec_id}

    def exec_start(self, exec_id: str, stream: bool = False):
        chunks, exit_code = self._client.exec_handler(self._execs[exec_id]["cmd"])
        self._execs[exec_id]["exit_code"] = exit_code
        return iter(chunks)

    def exec_inspect(self, exec_id: str):
        if self._client.fail_inspect:
            raise APIError("inspect failed")
        return {"ExitCode": self._execs[exec_id].get("exit_code")}


class FakeDockerClient:
    """Stand-in for docker.DockerClient with knobs for failure injection."""

    def __init__(self, images: Iterable[str] = ("node:20",)):
        self._ids = itertools.count(1)
        self.by_name: Dict[str, FakeContainer] = {}
        self.created: List[FakeContainer] = []
        self.removed: List[str] = []
        self.stopped: List[str] = []
        self.put_archive_calls: List[str] = []
        self.archive_owners: Dict[str, Tuple[int, int]] = {}
        self.exec_calls: List[Dict] = []

        self.start_errors: List[APIError] = []
        self.hide_port_mapping = False
        self.exec_run_exit_code = 0
        self.fail_inspect = False
        self.exec_handler: ExecHandler = lambda cmd: ([b"ok\n"], 0)

        self.containers = FakeContainers(self)
        self.images = FakeImages(images)
        self.api = FakeAPI(self)

    def add_existing(self, name: str, host_path: Path, workdir: str = "/app", state: str = "running") -> FakeContainer:
        """Register a container left behind by an earlier server run."""
        container = self.containers.create(
            name=name,
            working_dir=workdir,
            volumes={str(host_path): {"bind": workdir, "mode": "rw"}},
            ports={"4200/tcp": 8150},
        )
        self.created.remove(container)
        container.attrs["NetworkSettings"]["Ports"] = {"4200/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8150"}]}
        if state == "running":
            container._set_state(True, False, "running")
        elif state == "paused":
            container._set_state(True, True, "paused")
        else:
            container._set_state(False, False, "exited")
        return container


def blocking_exec_handler(first_chunk: bytes, release: threading.Event) -> ExecHandler:
    """An exec that prints one chunk and then hangs until released."""
    def handler(cmd):
        def chunks():
            yield first_chunk
            release.wait(timeout=10)
        return chunks(), 0
    return handler


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        load_env_file=False,
        storage_root=tmp_path / "storage",
        native_projects_dir=tmp_path / "native",
        exec_timeout=120,
    )


@pytest.fixture
def fake_docker() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture(autouse=True)
def sequential_ports(monkeypatch):
    """Deterministic port allocation: lowest port not yet tried."""
    def allocate(start: int, end: int, exclude: Iterable[int] = ()) -> Optional[int]:
        excluded = set(exclude)
        return next((port for port in range(start, end) if port not in excluded), None)

    monkeypatch.setattr("previewbox.sandbox.orchestrator.allocate_port", allocate)
    monkeypatch.setattr("previewbox.sandbox.native.allocate_port", allocate)
    return allocate
