import logging
import tempfile
from pathlib import Path

import pytest
from fakes import FakeDockerClient, make_request, runtime_error

from ci_runner.builder import Builder, cache_volume_path
from ci_runner.errors import (
    ConfigurationError,
    InvalidServiceError,
    NotFoundError,
    RunError,
    SetupError,
)
from ci_runner.models import TIMEOUT_EXIT_CODE
from ci_runner.sinks import BufferSink


def make_builder(client, request=None, output=None, timeout=5.0, **kwargs):
    return Builder(
        client,
        request or make_request(),
        output or BufferSink(),
        timeout=timeout,
        **kwargs,
    )


async def test_successful_build(cache_root):
    client = FakeDockerClient(exit_code=0, output=[b"ok\n"])
    output = BufferSink()
    builder = make_builder(client, output=output)

    state = await builder.run()

    assert state is builder.build_state
    assert state.exit_code == 0
    assert state.finished >= state.started
    assert "ok\n" in output.text()
    assert builder.image_name == "bradrydzewski/go:1.2"
    # everything created was removed
    assert client.containers == set()
    assert client.images == set()


async def test_failing_build_reports_exit_code(cache_root):
    client = FakeDockerClient(exit_code=2)
    state = await make_builder(client).run()
    assert state.exit_code == 2


async def test_attach_happens_before_start(cache_root):
    client = FakeDockerClient()
    await make_builder(client).run()
    names = client.names()
    assert names.index("create_container") < names.index("attach") < names.index("start")
    assert names.index("start") < names.index("wait")


async def test_timeout_sets_sentinel_exit_code(cache_root):
    client = FakeDockerClient(block=True)
    builder = make_builder(client, timeout=0.2)

    state = await builder.run()

    assert state.exit_code == TIMEOUT_EXIT_CODE
    assert state.finished >= state.started
    # teardown stopped and removed the still running container
    assert ("stop", "build") in client.calls
    assert ("remove_container", "build") in client.calls
    assert client.images == set()


async def test_missing_image_fails_before_runtime_calls(cache_root):
    client = FakeDockerClient()
    builder = make_builder(client, request=make_request(image=""))

    with pytest.raises(ConfigurationError):
        await builder.run()

    assert client.calls == []
    assert builder.build_state is not None
    assert builder.build_state.finished >= builder.build_state.started


async def test_unknown_service_is_a_setup_error(cache_root):
    client = FakeDockerClient()
    builder = make_builder(client, request=make_request(services=["nosuchservice"]))
    with pytest.raises(InvalidServiceError):
        await builder.run()
    assert client.calls == []


async def test_service_with_bad_port_leaves_no_containers(cache_root):
    client = FakeDockerClient()
    builder = make_builder(
        client, request=make_request(services=["redis", "custom redis:2.8 http"])
    )
    with pytest.raises(SetupError):
        await builder.run()
    assert builder.build_state.exit_code == 1
    assert client.containers == set()


async def test_services_are_started_linked_and_removed(cache_root):
    client = FakeDockerClient()
    request = make_request(services=["redis", "custom acme/db:1 9000,9001"])
    builder = make_builder(client, request=request)

    await builder.run()

    assert ("run_daemon", "bradrydzewski/redis:2.8", ("6379",)) in client.calls
    assert ("run_daemon", "acme/db:1", ("9000", "9001")) in client.calls
    create = next(call for call in client.calls if call[0] == "create_container")
    assert create[4] == ("service_1:redis", "service_2:custom")

    proxy = client.context_files["proxy.sh"].decode()
    assert "TCP-LISTEN:6379,fork TCP:172.17.0.1:6379" in proxy
    assert "TCP-LISTEN:9001,fork TCP:172.17.0.2:9001" in proxy

    teardown = [call for call in client.calls if call[0] in ("stop", "remove_container")]
    assert teardown == [
        ("stop", "build"),
        ("remove_container", "build"),
        ("stop", "svc1"),
        ("remove_container", "svc1"),
        ("stop", "svc2"),
        ("remove_container", "svc2"),
    ]
    assert client.names()[-1] == "remove_image"


async def test_service_inspect_failure_removes_untracked_container(cache_root):
    client = FakeDockerClient()
    inspect = client.inspect_container

    def flaky_inspect(container_id):
        if container_id == "svc2":
            client.calls.append(("inspect_container", container_id))
            raise runtime_error("inspect failed")
        return inspect(container_id)

    client.inspect_container = flaky_inspect
    builder = make_builder(client, request=make_request(services=["redis", "mysql"]))

    with pytest.raises(SetupError):
        await builder.run()

    # the untracked container is released right away, the tracked one by teardown
    stops = [call for call in client.calls if call[0] in ("stop", "remove_container")]
    assert stops == [
        ("stop", "svc2"),
        ("remove_container", "svc2"),
        ("stop", "svc1"),
        ("remove_container", "svc1"),
    ]
    assert "build_image" not in client.names()
    assert client.containers == set()


async def test_missing_base_image_is_pulled(cache_root):
    client = FakeDockerClient(missing_images={"bradrydzewski/go:1.2"})
    await make_builder(client).run()
    assert ("pull_image", "bradrydzewski/go:1.2") in client.calls
    assert client.names().index("pull_image") < client.names().index("build_image")


async def test_present_base_image_is_not_pulled(cache_root):
    client = FakeDockerClient()
    await make_builder(client).run()
    assert "pull_image" not in client.names()


async def test_image_inspect_failure_removes_image(cache_root):
    client = FakeDockerClient()
    inspect = client.inspect_image

    def inspect_image(name):
        if name.startswith("ci-runner/"):
            raise NotFoundError(name)
        return inspect(name)

    client.inspect_image = inspect_image
    builder = make_builder(client)

    with pytest.raises(SetupError):
        await builder.run()

    removed = [call for call in client.calls if call[0] == "remove_image"]
    assert len(removed) == 1
    assert removed[0][1].startswith("ci-runner/")
    assert "create_container" not in client.names()


async def test_build_failure_aborts_setup(cache_root):
    client = FakeDockerClient(fail={"build_image": runtime_error()})
    with pytest.raises(SetupError):
        await make_builder(client).run()
    assert "create_container" not in client.names()


async def test_start_failure_is_a_run_error(cache_root):
    client = FakeDockerClient(fail={"start": runtime_error("cannot start")})
    builder = make_builder(client)

    with pytest.raises(RunError):
        await builder.run()

    assert builder.build_state.exit_code == 1
    assert builder.build_state.finished >= builder.build_state.started
    assert ("remove_container", "build") in client.calls
    assert client.images == set()


async def test_wait_failure_is_a_run_error(cache_root):
    client = FakeDockerClient(fail={"wait": runtime_error()})
    builder = make_builder(client)
    with pytest.raises(RunError):
        await builder.run()
    assert builder.build_state.exit_code == 1


class UnreachableOutput(BufferSink):
    """Accepts runner messages but fails on container output."""

    async def write(self, data: bytes) -> None:
        if not data.startswith(b"[runner]"):
            raise ConnectionError("redis down")
        await super().write(data)


async def test_output_sink_failure_is_a_run_error(cache_root):
    client = FakeDockerClient()
    builder = make_builder(client, output=UnreachableOutput())

    with pytest.raises(RunError, match="redis down"):
        await builder.run()

    assert builder.build_state.exit_code == 1
    assert ("remove_container", "build") in client.calls
    assert client.images == set()


async def test_teardown_failures_are_logged_not_raised(cache_root, caplog):
    client = FakeDockerClient(
        fail={"stop": runtime_error("stop"), "remove_container": runtime_error("rm")},
    )
    builder = make_builder(client, request=make_request(services=["redis"]))

    with caplog.at_level(logging.ERROR, logger="ci_runner.builder"):
        state = await builder.run()

    assert state.exit_code == 0
    # every step was attempted despite earlier failures
    assert ("stop", "svc1") in client.calls
    assert ("remove_container", "svc1") in client.calls
    assert "remove_image" in client.names()
    assert "failed to clean up" in caplog.text


async def test_local_repo_is_copied_into_context(cache_root, local_repo):
    client = FakeDockerClient()
    request = make_request(path=str(local_repo))

    await make_builder(client, request=request).run()

    assert client.context_files["src/main.go"] == b"package main\n"
    assert client.context_files["src/pkg/lib.go"] == b"package pkg\n"
    assert b"git clone" not in client.context_files["ci-build"]
    assert "ADD src " in client.context_files["Dockerfile"].decode()


async def test_remote_repo_is_not_copied(cache_root):
    client = FakeDockerClient()
    await make_builder(client).run()
    assert not any(name.startswith("src/") for name in client.context_files)
    assert b"git clone" in client.context_files["ci-build"]


async def test_context_file_modes(cache_root):
    client = FakeDockerClient()
    await make_builder(client).run()
    assert client.context_modes["id_rsa"] == 0o600
    assert client.context_modes["ci-build"] == 0o700
    assert client.context_modes["proxy.sh"] == 0o755


async def test_build_context_is_removed(cache_root, monkeypatch, tmp_path):
    (tmp_path / "tmp").mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path / "tmp"))
    await make_builder(FakeDockerClient()).run()
    assert list((tmp_path / "tmp").iterdir()) == []


async def test_cache_volumes_are_bound(cache_root):
    client = FakeDockerClient()
    request = make_request(cache=["/var/cache/apt", "vendor"])

    await make_builder(client, request=request).run()

    create = next(call for call in client.calls if call[0] == "create_container")
    workdir = "/var/cache/ci/src/github.com/acme/widget"
    assert create[2] == ("/var/cache/apt", f"{workdir}/vendor")
    host_root = f"{cache_root}/github.com/acme/widget/master"
    assert create[3] == (
        f"{host_root}/var/cache/apt:/var/cache/apt",
        f"{host_root}{workdir}/vendor:{workdir}/vendor",
    )
    assert (cache_root / "github.com/acme/widget/master/var/cache/apt").is_dir()


def test_cache_volume_path_is_deterministic(tmp_path):
    first = cache_volume_path(tmp_path, "acme/widget", "master", "vendor/../deps", "/src")
    second = cache_volume_path(tmp_path, "acme/widget", "master", "vendor/../deps", "/src")
    assert first == second
    assert first.container == "/src/deps"
    assert first.host == Path(tmp_path, "acme/widget/master/src/deps")


def test_cache_volume_path_keys_on_branch(tmp_path):
    master = cache_volume_path(tmp_path, "widget", "master", "/cache", "/src")
    dev = cache_volume_path(tmp_path, "widget", "dev", "/cache", "/src")
    assert master.host != dev.host
    assert master.container == dev.container == "/cache"
