from __future__ import annotations

import json
from pathlib import Path

import pytest
import requests

from scripts.provision import app_deploy
from scripts.provision.errors import CommandError, PreconditionConflictError, ReadinessTimeoutError
from scripts.provision.provision_config import ProvisionConfig


@pytest.fixture
def config(tmp_path: Path) -> ProvisionConfig:
    return ProvisionConfig(domain="example.com", email="user@gmail.com", data_dir=tmp_path / ".n8n")


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr("scripts.provision.app_deploy.time.sleep", recorded.append)
    return recorded


def test_container_exists_uses_inspect_exit_status(fake_runner) -> None:
    fake_runner.on("docker", "container", "inspect", stdout="/n8n\n")
    assert app_deploy.container_exists(fake_runner, "n8n") is True
    assert fake_runner.ran("docker") == [["docker", "container", "inspect", "--format", "{{.Name}}", "n8n"]]
    assert fake_runner.privileged_calls == fake_runner.calls


def test_container_missing(fake_runner) -> None:
    fake_runner.on("docker", "container", "inspect", returncode=1, stderr="Error: No such container: n8n")
    assert app_deploy.container_exists(fake_runner, "n8n") is False


def test_container_query_failure_is_not_treated_as_missing(fake_runner) -> None:
    fake_runner.on(
        "docker", "container", "inspect",
        returncode=1,
        stderr="Cannot connect to the Docker daemon at unix:///var/run/docker.sock",
    )
    with pytest.raises(CommandError, match="Cannot connect to the Docker daemon"):
        app_deploy.container_exists(fake_runner, "n8n")


def test_existing_container_is_a_precondition_conflict(fake_runner) -> None:
    fake_runner.on("docker", "container", "inspect", stdout="/n8n\n")

    with pytest.raises(PreconditionConflictError) as excinfo:
        app_deploy.ensure_no_existing_container(fake_runner, "n8n")

    text = str(excinfo.value)
    assert "already exists" in text
    assert "docker stop n8n" in text
    assert "docker rm n8n" in text
    assert excinfo.value.kind == "precondition"


def test_build_run_cmd_binds_domain_port_and_data(config: ProvisionConfig) -> None:
    cmd = app_deploy.build_run_cmd(config)
    assert cmd[:6] == ["docker", "run", "-d", "--restart", "unless-stopped", "--name"]
    assert cmd[6] == "n8n"
    assert "5678:5678" in cmd
    assert "N8N_HOST=example.com" in cmd
    assert "WEBHOOK_URL=https://example.com/" in cmd
    assert "WEBHOOK_TUNNEL_URL=https://example.com/" in cmd
    assert f"{config.data_dir}:/home/node/.n8n" in cmd
    assert cmd[-1] == "n8nio/n8n"


def test_start_container_creates_data_dir_first(fake_runner, config) -> None:
    fake_runner.on("docker", "run", stdout="0123456789abcdef0123\n")

    out = app_deploy.start_container(fake_runner, config)

    assert out == "0123456789abcdef0123"
    assert fake_runner.calls[0] == ["mkdir", "-p", str(config.data_dir)]
    # the image runs as uid 1000, a root-owned bind mount would be unwritable
    assert fake_runner.calls[1] == ["chown", "1000:1000", str(config.data_dir)]
    assert fake_runner.calls[2][:2] == ["docker", "run"]
    assert fake_runner.privileged_calls[:2] == fake_runner.calls[:2]


def test_start_container_name_race_is_a_conflict(fake_runner, config) -> None:
    fake_runner.on(
        "docker", "run",
        returncode=125,
        stderr='docker: Error response from daemon: Conflict. The container name "/n8n" is already in use.',
    )
    with pytest.raises(PreconditionConflictError):
        app_deploy.start_container(fake_runner, config)


def test_start_container_other_failure(fake_runner, config) -> None:
    fake_runner.on("docker", "run", returncode=125, stderr="port is already allocated")
    with pytest.raises(CommandError, match="port is already allocated"):
        app_deploy.start_container(fake_runner, config)


def test_wait_until_ready_retries_until_answer(monkeypatch, sleeps, dummy_response) -> None:
    answers = [requests.ConnectionError("refused"), dummy_response(502), dummy_response(200)]

    def fake_get(url, timeout):
        assert url == "http://localhost:5678"
        answer = answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    monkeypatch.setattr("scripts.provision.app_deploy.requests.get", fake_get)

    assert app_deploy.wait_until_ready("http://localhost:5678") == 3
    assert sleeps == [5, 5]


def test_wait_until_ready_times_out_after_attempt_cap(monkeypatch, sleeps) -> None:
    calls: list[str] = []

    def fake_get(url, timeout):
        calls.append(url)
        raise requests.ConnectionError("refused")

    monkeypatch.setattr("scripts.provision.app_deploy.requests.get", fake_get)

    with pytest.raises(ReadinessTimeoutError) as excinfo:
        app_deploy.wait_until_ready("http://localhost:5678", attempts=30, interval_seconds=5)

    assert len(calls) == 30
    assert sleeps == [5] * 29
    assert "failed to start" in str(excinfo.value)
    assert "after 30 attempts" in str(excinfo.value)
    assert excinfo.value.kind == "readiness"


def test_container_status_reads_json_rows(fake_runner) -> None:
    rows = [
        {"Names": "n8n-worker", "Status": "Up 1 hour", "Ports": ""},
        {"Names": "n8n", "Status": "Up 5 seconds", "Ports": "0.0.0.0:5678->5678/tcp"},
    ]
    fake_runner.on("docker", "ps", stdout="\n".join(json.dumps(row) for row in rows) + "\n")

    out = app_deploy.container_status(fake_runner, "n8n")

    assert out == app_deploy.ContainerStatus(name="n8n", status="Up 5 seconds", ports="0.0.0.0:5678->5678/tcp")


def test_deploy_application_pulls_runs_and_waits(fake_runner, config, monkeypatch, sleeps, dummy_response) -> None:
    fake_runner.on("docker", "ps", stdout=json.dumps({"Names": "n8n", "Status": "Up", "Ports": "5678"}) + "\n")
    monkeypatch.setattr("scripts.provision.app_deploy.requests.get", lambda url, timeout: dummy_response(200))

    status = app_deploy.deploy_application(config, fake_runner)

    assert status is not None and status.name == "n8n"
    docker_verbs = [cmd[1] for cmd in fake_runner.ran("docker")]
    assert docker_verbs == ["pull", "run", "ps"]
    assert sleeps == []
