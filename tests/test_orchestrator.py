"""Tests for the container sandbox orchestrator."""

import asyncio
import os

import pytest
from docker.errors import APIError

import previewbox.sandbox.orchestrator as orchestrator_module
from previewbox.errors import PreviewAddressError, SandboxCreationError, SandboxNotAvailableError
from previewbox.sandbox.orchestrator import SandboxOrchestrator
from previewbox.schemas import DirectoryEntry, FileEntry, SandboxStatus

from conftest import FakeDockerClient, already_running_error, port_conflict_error


def make_orchestrator(config, client, user_id="u1", user_name="Jane Doe"):
    return SandboxOrchestrator(user_id, user_name=user_name, config=config, client=client)


def live_containers(client: FakeDockerClient):
    return [c for c in client.created if not c.removed]


class TestEnsure:

    async def test_first_ensure_creates_container(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        handle = await orch.ensure("p1")

        assert handle.project_id == "p1"
        assert handle.user_id == "u1"
        assert handle.status == SandboxStatus.RUNNING
        assert handle.port == 8100
        assert handle.workdir == "/app"
        assert handle.host_path == config.projects_root / "p1"
        assert handle.host_path.is_dir()
        assert orch.status == SandboxStatus.RUNNING

        (container,) = fake_docker.created
        assert container.name == orch.container_name == "previewbox-user-jane_doe-u1"
        assert container.kwargs["ports"] == {"4200/tcp": 8100}
        assert container.kwargs["volumes"] == {
            str(config.projects_root / "p1"): {"bind": "/app", "mode": "rw"}
        }
        assert container.kwargs["mem_limit"] == "1g"
        assert container.kwargs["command"] == ["/bin/sh", "-c", "tail -f /dev/null"]

    async def test_runs_as_host_user(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        if hasattr(os, "getuid"):
            assert fake_docker.created[0].kwargs["user"] == f"{os.getuid()}:{os.getgid()}"

    async def test_same_project_returns_same_handle(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        first = await orch.ensure("p1")
        second = await orch.ensure("p1")

        assert first is second
        assert len(fake_docker.created) == 1

    async def test_concurrent_ensure_creates_once(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        handles = await asyncio.gather(*(orch.ensure("p1") for _ in range(5)))

        assert all(h is handles[0] for h in handles)
        assert len(fake_docker.created) == 1

    async def test_different_project_recreates(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        handle = await orch.ensure("p2")

        assert handle.project_id == "p2"
        assert orch.project_id == "p2"
        assert len(fake_docker.created) == 2
        assert fake_docker.created[0].removed
        assert live_containers(fake_docker) == [fake_docker.created[1]]
        bound = fake_docker.created[1].attrs["HostConfig"]["Binds"][0]
        assert bound.startswith(str(config.projects_root / "p2") + ":/app")

    async def test_concurrent_switch_never_leaves_two_containers(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        first, second = await asyncio.gather(orch.ensure("p1"), orch.ensure("p2"))

        assert first.project_id == "p1"
        assert second.project_id == "p2"
        assert orch.project_id == "p2"
        assert len(live_containers(fake_docker)) == 1

    async def test_concurrent_switch_recreates_once(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")

        handles = await asyncio.gather(*(orch.ensure("p2") for _ in range(5)))

        assert all(h is handles[0] for h in handles)
        assert handles[0].project_id == "p2"
        assert len(fake_docker.created) == 2
        assert fake_docker.stopped == [orch.container_name]
        assert live_containers(fake_docker) == [fake_docker.created[1]]

    async def test_status_is_recreating_during_switch(self, config, fake_docker, monkeypatch):
        orch = make_orchestrator(config, fake_docker)
        old = await orch.ensure("p1")
        seen = []

        create = orch._create_container
        stop_and_remove = orch._stop_and_remove

        async def record_stop(container):
            seen.append(("stop", orch.status))
            await stop_and_remove(container)

        async def record_create(host_path, project_id):
            seen.append(("create", orch.status))
            return await create(host_path, project_id)

        monkeypatch.setattr(orch, "_stop_and_remove", record_stop)
        monkeypatch.setattr(orch, "_create_container", record_create)
        await orch.ensure("p2")

        assert seen == [("stop", SandboxStatus.RECREATING), ("create", SandboxStatus.RECREATING)]
        assert old.status == SandboxStatus.RECREATING
        assert orch.status == SandboxStatus.RUNNING

    async def test_status_is_creating_on_first_ensure(self, config, fake_docker, monkeypatch):
        orch = make_orchestrator(config, fake_docker)
        seen = []
        create = orch._create_container

        async def record_create(host_path, project_id):
            seen.append(orch.status)
            return await create(host_path, project_id)

        monkeypatch.setattr(orch, "_create_container", record_create)
        await orch.ensure("p1")

        assert seen == [SandboxStatus.CREATING]

    async def test_invalid_project_id(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        for bad in ["", "..", "a/b", "../etc"]:
            with pytest.raises(ValueError):
                await orch.ensure(bad)
        assert fake_docker.created == []

    async def test_pulls_missing_image(self, config):
        client = FakeDockerClient(images=())
        orch = make_orchestrator(config, client)
        await orch.ensure("p1")
        assert client.images.pulled == ["node:20"]

    async def test_installs_cleanup_tools_as_root(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        cmd, user = fake_docker.created[0].exec_run_calls[0]
        assert user == "root"
        assert "psmisc" in cmd[-1]

    async def test_cleanup_tools_failure_is_not_fatal(self, config, fake_docker):
        fake_docker.exec_run_exit_code = 100
        orch = make_orchestrator(config, fake_docker)
        handle = await orch.ensure("p1")
        assert handle.status == SandboxStatus.RUNNING


class TestPortRetry:

    async def test_port_conflict_retries_with_new_port(self, config, fake_docker):
        fake_docker.start_errors = [port_conflict_error(8100)]
        orch = make_orchestrator(config, fake_docker)
        handle = await orch.ensure("p1")

        assert len(fake_docker.created) == 2
        assert fake_docker.created[0].removed
        assert fake_docker.created[1].kwargs["ports"] == {"4200/tcp": 8101}
        assert handle.port == 8101

    async def test_second_failure_raises(self, config, fake_docker):
        fake_docker.start_errors = [port_conflict_error(8100), port_conflict_error(8101)]
        orch = make_orchestrator(config, fake_docker)

        with pytest.raises(SandboxCreationError):
            await orch.ensure("p1")

        assert live_containers(fake_docker) == []
        assert orch.handle is None
        assert orch.status == SandboxStatus.ABSENT

    async def test_other_start_failure_is_not_retried(self, config, fake_docker):
        fake_docker.start_errors = [APIError("OCI runtime create failed: exec format error")]
        orch = make_orchestrator(config, fake_docker)

        with pytest.raises(SandboxCreationError, match="exec format error"):
            await orch.ensure("p1")

        assert len(fake_docker.created) == 1
        assert fake_docker.created[0].removed
        assert orch.status == SandboxStatus.ABSENT

    async def test_already_running_is_success(self, config, fake_docker):
        fake_docker.start_errors = [already_running_error()]
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        assert len(fake_docker.created) == 1


class TestAdoption:

    async def test_adopts_matching_paused_container(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        existing = fake_docker.add_existing(orch.container_name, config.projects_root / "p1", state="paused")

        handle = await orch.ensure("p1")

        assert fake_docker.created == []
        assert handle.sandbox_id == existing.id
        assert handle.port == 8150
        assert existing.attrs["State"]["Paused"] is False

    async def test_starts_stopped_container(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        existing = fake_docker.add_existing(orch.container_name, config.projects_root / "p1", state="exited")

        await orch.ensure("p1")
        assert existing.attrs["State"]["Running"] is True

    async def test_bind_mismatch_recreates(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        existing = fake_docker.add_existing(orch.container_name, config.projects_root / "other")

        handle = await orch.ensure("p1")

        assert existing.removed
        assert len(fake_docker.created) == 1
        assert handle.sandbox_id == fake_docker.created[0].id

    async def test_broken_existing_container_is_replaced(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        existing = fake_docker.add_existing(orch.container_name, config.projects_root / "p1", state="exited")
        fake_docker.start_errors = [APIError("cannot start: bad state")]

        handle = await orch.ensure("p1")

        assert existing.removed
        assert handle.sandbox_id == fake_docker.created[0].id


class TestRunningState:

    async def test_pause_and_unpause(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        handle = await orch.ensure("p1")

        await orch.pause()
        assert handle.status == SandboxStatus.PAUSED
        assert fake_docker.created[0].attrs["State"]["Paused"]

        await orch.unpause()
        assert handle.status == SandboxStatus.RUNNING
        assert not fake_docker.created[0].attrs["State"]["Paused"]

    async def test_exec_resumes_paused_sandbox(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        await orch.pause()

        result = await orch.exec("echo hi")

        assert result.ok
        assert not fake_docker.created[0].attrs["State"]["Paused"]
        assert orch.status == SandboxStatus.RUNNING

    async def test_ensure_resumes_paused_sandbox(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        await orch.pause()
        await orch.ensure("p1")
        assert orch.status == SandboxStatus.RUNNING

    async def test_resolve_url(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        assert await orch.resolve_url() == "http://127.0.0.1:8100"

    async def test_resolve_url_fails_without_mapping(self, config, fake_docker, monkeypatch):
        monkeypatch.setattr(orchestrator_module, "URL_RESOLVE_DELAY_SECONDS", 0)
        fake_docker.hide_port_mapping = True
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")

        with pytest.raises(PreviewAddressError, match="Failed to allocate preview address"):
            await orch.resolve_url()

    async def test_info(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        assert await orch.info() is None

        await orch.ensure("p1")
        info = await orch.info()
        assert info.container_name == orch.container_name
        assert info.container_workdir == "/app"
        assert info.host_project_path == str((config.projects_root / "p1").resolve())
        assert info.status == "running"

    async def test_operations_without_sandbox(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        with pytest.raises(SandboxNotAvailableError, match="No sandbox available"):
            await orch.exec("ls")
        with pytest.raises(SandboxNotAvailableError):
            await orch.resolve_url()
        with pytest.raises(SandboxNotAvailableError):
            await orch.push({"a.txt": FileEntry(contents="x")})

    async def test_vanished_container(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        fake_docker.created[0].remove(force=True)

        with pytest.raises(SandboxNotAvailableError):
            await orch.exec("ls")
        assert orch.handle is None


class TestTeardown:

    async def test_teardown_removes_container(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        await orch.teardown()

        assert fake_docker.created[0].removed
        assert orch.handle is None
        assert orch.status == SandboxStatus.ABSENT
        assert not orch.is_running

    async def test_status_is_stopping_until_removed(self, config, fake_docker, monkeypatch):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        seen = []
        stop_and_remove = orch._stop_and_remove

        async def record_stop(container):
            seen.append(orch.status)
            await stop_and_remove(container)

        monkeypatch.setattr(orch, "_stop_and_remove", record_stop)
        await orch.teardown()

        assert seen == [SandboxStatus.STOPPING]
        assert orch.status == SandboxStatus.ABSENT

    async def test_teardown_is_safe_when_absent(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.teardown()
        await orch.ensure("p1")
        await orch.teardown()
        await orch.teardown()
        assert fake_docker.removed == [orch.container_name]

    async def test_ensure_after_teardown_creates_again(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        first = await orch.ensure("p1")
        await orch.teardown()
        second = await orch.ensure("p1")
        assert first is not second
        assert len(fake_docker.created) == 2

    async def test_context_manager(self, config, fake_docker):
        async with make_orchestrator(config, fake_docker) as orch:
            await orch.ensure("p1")
        assert fake_docker.created[0].removed


class TestFileTransport:

    async def test_push_and_read(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        await orch.push({
            "package.json": FileEntry(contents="{}"),
            "src": DirectoryEntry(children={"main.ts": FileEntry(contents="console.log(1)")}),
            ".DS_Store": FileEntry(contents="junk"),
        })

        container = fake_docker.created[0]
        assert fake_docker.put_archive_calls == ["/app"]
        assert set(container.files) == {"package.json", "src/main.ts"}
        assert await orch.files.read_file("src/main.ts") == b"console.log(1)"

    async def test_archive_is_owned_by_host_user(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        await orch.push({"a.txt": FileEntry(contents="x")})
        if hasattr(os, "getuid"):
            assert fake_docker.archive_owners["a.txt"] == (os.getuid(), os.getgid())

    async def test_read_missing_file(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        with pytest.raises(FileNotFoundError):
            await orch.files.read_file("nope.txt")

    async def test_delete_and_mkdir_use_exec(self, config, fake_docker):
        orch = make_orchestrator(config, fake_docker)
        await orch.ensure("p1")
        await orch.files.delete_file("src/old.ts")
        await orch.files.mkdir("src/new")

        commands = [call["cmd"] for call in fake_docker.exec_calls]
        assert ["rm", "-rf", "/app/src/old.ts"] in commands
        assert ["mkdir", "-p", "/app/src/new"] in commands
        assert "src/old.ts" in orch.files.recent_writes
