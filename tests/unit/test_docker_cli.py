"""Tests for DockerCli argv construction and result interpretation."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import pytest

from shipyard.core.errors import OperationError
from shipyard.remote.runtime import DockerCli
from shipyard.remote.transport import CommandResult


class RecordingChannel:
    """Returns scripted results and records every argv it is asked to run."""

    def __init__(self, *results: CommandResult) -> None:
        self.argvs: list[list[str]] = []
        self._results = list(results)

    async def run(self, argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        self.argvs.append(list(argv))
        if self._results:
            return self._results.pop(0)
        return CommandResult(argv=list(argv), exit_code=0)

    async def close(self) -> None:
        return None


def _result(code: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(argv=[], exit_code=code, stdout=stdout, stderr=stderr)


class TestImages:
    def test_build_argv(self):
        channel = RecordingChannel()
        tag = asyncio.run(DockerCli(channel).build(
            "/src/site/", "site:abc", dockerfile="Dockerfile.prod",
            build_args={"B": "2", "A": "1"},
        ))
        assert tag == "site:abc"
        assert channel.argvs[0] == [
            "docker", "build", "-t", "site:abc", "-f", "/src/site/Dockerfile.prod",
            "--build-arg", "A=1", "--build-arg", "B=2", "/src/site/",
        ]

    def test_image_exists(self):
        channel = RecordingChannel(_result(0), _result(1, stderr="No such image"))
        docker = DockerCli(channel)
        assert asyncio.run(docker.image_exists("site:abc")) is True
        assert asyncio.run(docker.image_exists("site:def")) is False

    def test_pull_failure_raises_with_exit_code(self):
        channel = RecordingChannel(_result(1, stderr="manifest unknown"))
        with pytest.raises(OperationError, match="manifest unknown") as info:
            asyncio.run(DockerCli(channel).pull("site:abc"))
        assert info.value.exit_code == 1


class TestContainers:
    def test_run_argv(self):
        channel = RecordingChannel(_result(0, stdout="c0ffee\n"))
        container_id = asyncio.run(DockerCli(channel).run("site:abc", "site", {8080: 80}))
        assert container_id == "c0ffee"
        assert channel.argvs[0] == [
            "docker", "run", "-d", "--name", "site", "--restart", "unless-stopped",
            "-p", "8080:80", "site:abc",
        ]

    def test_inspect_parses_fields(self):
        channel = RecordingChannel(_result(0, stdout="abc123|site:abc|true\n"))
        info = asyncio.run(DockerCli(channel).inspect("site"))
        assert info is not None
        assert (info.container_id, info.image, info.running) == ("abc123", "site:abc", True)

    def test_inspect_missing_is_none(self):
        channel = RecordingChannel(_result(1, stderr="Error: No such container: site"))
        assert asyncio.run(DockerCli(channel).inspect("site")) is None

    def test_inspect_other_failure_raises(self):
        channel = RecordingChannel(_result(1, stderr="Cannot connect to the Docker daemon"))
        with pytest.raises(OperationError):
            asyncio.run(DockerCli(channel).inspect("site"))

    def test_stop_and_remove_missing_are_noops(self):
        channel = RecordingChannel(
            _result(1, stderr="Error: No such container: site"),
            _result(1, stderr="Error: No such container: site"),
        )
        docker = DockerCli(channel)
        asyncio.run(docker.stop("site"))
        asyncio.run(docker.remove("site"))
        assert channel.argvs == [["docker", "stop", "site"], ["docker", "rm", "-f", "site"]]

    def test_remove_failure_raises(self):
        channel = RecordingChannel(_result(1, stderr="permission denied"))
        with pytest.raises(OperationError):
            asyncio.run(DockerCli(channel).remove("site"))
