"""Start the n8n container and wait until it answers on its local port."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass

import requests

from scripts.provision.command_runner import CommandRunner
from scripts.provision.errors import CommandError, PreconditionConflictError, ReadinessTimeoutError
from scripts.provision.provision_config import ProvisionConfig


LOG_PREFIX = "[APP]"
# uid:gid of the ``node`` user the n8n image runs as
DATA_DIR_OWNER = "1000:1000"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContainerStatus:
    name: str
    status: str
    ports: str


def _existing_container_message(name: str) -> str:
    return (
        f"An {name} container already exists! To perform a fresh installation, "
        "please manually remove it first:\n\n"
        f"    docker stop {name}\n"
        f"    docker rm {name}\n\n"
        "Then run this script again. This safety check prevents accidental data loss."
    )


def container_exists(runner: CommandRunner, name: str) -> bool:
    """True when a container called *name* exists, running or stopped."""
    result = runner.run(
        ["docker", "container", "inspect", "--format", "{{.Name}}", name],
        privileged=True,
        check=False,
    )
    if result.ok:
        return True
    if "no such container" in result.text().lower():
        return False
    raise CommandError(
        f"Failed to query Docker for container {name} (exit code {result.returncode}). {result.text()}".strip(),
        result=result,
    )


def ensure_no_existing_container(runner: CommandRunner, name: str) -> None:
    logger.info("%s Checking for existing %s container...", LOG_PREFIX, name)
    if container_exists(runner, name):
        raise PreconditionConflictError(_existing_container_message(name))
    logger.info("%s No existing %s container found", LOG_PREFIX, name)


def pull_image(runner: CommandRunner, image: str) -> None:
    logger.info("%s Pulling %s...", LOG_PREFIX, image)
    runner.run(["docker", "pull", image], privileged=True, action=f"Failed to pull Docker image {image}")


def build_run_cmd(config: ProvisionConfig) -> list[str]:
    return [
        "docker",
        "run",
        "-d",
        "--restart",
        "unless-stopped",
        "--name",
        config.container_name,
        "-p",
        f"{config.app_port}:{config.app_port}",
        "-e",
        f"N8N_HOST={config.domain}",
        "-e",
        f"WEBHOOK_TUNNEL_URL={config.public_url}",
        "-e",
        f"WEBHOOK_URL={config.public_url}",
        "-v",
        f"{config.data_dir}:{config.container_data_dir}",
        config.app_image,
    ]


def start_container(runner: CommandRunner, config: ProvisionConfig) -> str:
    """Create the data directory and start the container; returns its id."""
    runner.run(
        ["mkdir", "-p", str(config.data_dir)],
        privileged=True,
        action=f"Failed to create data directory {config.data_dir}",
    )
    runner.run(
        ["chown", DATA_DIR_OWNER, str(config.data_dir)],
        privileged=True,
        action=f"Failed to hand data directory {config.data_dir} to the container user",
    )
    result = runner.run(build_run_cmd(config), privileged=True, check=False)
    if not result.ok:
        detail = result.text()
        # docker enforces name uniqueness; losing that race is the same conflict
        if "already in use" in detail or "Conflict" in detail:
            raise PreconditionConflictError(_existing_container_message(config.container_name))
        raise CommandError(
            f"Failed to start the {config.container_name} container (exit code {result.returncode}). {detail}".strip(),
            result=result,
        )
    container_id = result.stdout.strip()
    logger.info("%s %s container started (%s)", LOG_PREFIX, config.container_name, container_id[:12])
    return container_id


def wait_until_ready(url: str, *, attempts: int = 30, interval_seconds: float = 5, name: str = "n8n") -> int:
    """Poll *url* until it answers; returns the attempt number that succeeded."""
    logger.info("%s Waiting for %s to start...", LOG_PREFIX, name)
    for attempt in range(1, attempts + 1):
        try:
            response = requests.get(url, timeout=5)
            if response.ok:
                logger.info("%s %s is ready!", LOG_PREFIX, name)
                return attempt
        except requests.RequestException as exc:
            logger.debug("%s %s not answering yet: %s", LOG_PREFIX, url, exc)
        logger.info("%s Attempt %s/%s - waiting for %s to start...", LOG_PREFIX, attempt, attempts, name)
        if attempt < attempts:
            time.sleep(interval_seconds)

    raise ReadinessTimeoutError(
        f"{name} container is running but failed to start serving on {url} after {attempts} attempts. "
        f"Check its logs with: docker logs {name}"
    )


def container_status(runner: CommandRunner, name: str) -> ContainerStatus | None:
    result = runner.run(
        ["docker", "ps", "--all", "--filter", f"name=^{name}$", "--format", "{{json .}}"],
        privileged=True,
        check=False,
    )
    if not result.ok:
        return None
    for line in result.stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except ValueError:
            continue
        if str(row.get("Names") or "") == name:
            return ContainerStatus(
                name=name,
                status=str(row.get("Status") or ""),
                ports=str(row.get("Ports") or ""),
            )
    return None


def deploy_application(config: ProvisionConfig, runner: CommandRunner) -> ContainerStatus | None:
    """Pull, start and wait for the container.

    The existence pre-check runs earlier in the workflow, before DNS is verified.
    """
    pull_image(runner, config.app_image)
    start_container(runner, config)
    wait_until_ready(
        config.local_url,
        attempts=config.readiness_attempts,
        interval_seconds=config.readiness_interval_seconds,
        name=config.container_name,
    )
    return container_status(runner, config.container_name)
