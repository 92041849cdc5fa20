"""Make sure Docker, the compose plugin, nginx and certbot are installed.

Every tool is probed first and only touched when missing or broken, so a
second run on a provisioned host performs no package-manager actions.
"""
from __future__ import annotations

import logging
import platform
from dataclasses import dataclass, field

import requests

from scripts.provision.command_runner import CommandResult, CommandRunner
from scripts.provision.errors import CommandError, HostEnvironmentError


LOG_PREFIX = "[PREREQS]"

BASE_PACKAGES = [
    "curl",
    "wget",
    "apt-transport-https",
    "ca-certificates",
    "gnupg",
    "lsb-release",
    "software-properties-common",
    "dnsutils",
]
DOCKER_PACKAGES = ["docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin"]
LEGACY_DOCKER_PACKAGES = ["docker", "docker-engine", "docker.io", "containerd", "runc"]
NGINX_PACKAGES = ["nginx"]
CERTBOT_PACKAGES = ["certbot", "python3-certbot-nginx"]

DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_KEYRING = "/usr/share/keyrings/docker-archive-keyring.gpg"
DOCKER_APT_LIST = "/etc/apt/sources.list.d/docker.list"
COMPOSE_RELEASES_URL = "https://api.github.com/repos/docker/compose/releases/latest"
COMPOSE_STANDALONE_PATH = "/usr/local/bin/docker-compose"

ACTION_PRESENT = "present"
ACTION_INSTALLED = "installed"
ACTION_REINSTALLED = "reinstalled"

APT_ENV = ["env", "DEBIAN_FRONTEND=noninteractive"]

logger = logging.getLogger(__name__)


@dataclass
class ToolStatus:
    name: str
    action: str
    version: str = ""


@dataclass
class PrerequisiteReport:
    tools: list[ToolStatus] = field(default_factory=list)
    base_packages_installed: list[str] = field(default_factory=list)
    docker_group_added: bool = False
    system_info: dict[str, str] = field(default_factory=dict)

    @property
    def installed_anything(self) -> bool:
        if self.base_packages_installed:
            return True
        return any(tool.action != ACTION_PRESENT for tool in self.tools)

    def status_for(self, name: str) -> ToolStatus | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


class AptInstaller:
    """apt-get wrapper that refreshes the package cache at most once per run."""

    def __init__(self, runner: CommandRunner):
        self._runner = runner
        self._cache_ready = False

    def _ensure_cache(self) -> None:
        if self._cache_ready:
            return
        logger.info("%s Updating package index", LOG_PREFIX)
        self._runner.run(
            [*APT_ENV, "apt-get", "update", "-y"],
            privileged=True,
            action="Failed to update the apt package index",
        )
        self._cache_ready = True

    def invalidate_cache(self) -> None:
        self._cache_ready = False

    def is_installed(self, package: str) -> bool:
        result = self._runner.run(
            ["dpkg-query", "-W", "-f=${Status}", package],
            check=False,
        )
        return result.ok and "install ok installed" in result.stdout

    def install(self, packages: list[str], *, reinstall: bool = False) -> None:
        self._ensure_cache()
        cmd = [*APT_ENV, "apt-get", "install", "-y"]
        if reinstall:
            cmd.append("--reinstall")
        self._runner.run(
            [*cmd, *packages],
            privileged=True,
            action=f"Failed to install {' '.join(packages)}",
        )

    def remove(self, packages: list[str]) -> None:
        # Old packages may simply not be there.
        self._runner.run([*APT_ENV, "apt-get", "remove", "-y", *packages], privileged=True, check=False)


def _first_line(result: CommandResult) -> str:
    text = (result.stdout or "").strip() or (result.stderr or "").strip()
    return text.splitlines()[0] if text else ""


def _probe(runner: CommandRunner, executable: str, version_cmd: list[str], *, privileged: bool = False) -> tuple[bool, bool, str]:
    """Return ``(present, working, version)`` for *executable*."""
    if not runner.which(executable):
        return False, False, ""
    result = runner.run(version_cmd, privileged=privileged, check=False)
    return True, result.ok, _first_line(result)


def _enable_service(runner: CommandRunner, service: str) -> None:
    runner.run(["systemctl", "start", service], privileged=True, action=f"Failed to start {service}")
    runner.run(["systemctl", "enable", service], privileged=True, action=f"Failed to enable {service}")


def _download(url: str, *, what: str) -> requests.Response:
    try:
        response = requests.get(url, timeout=30)
    except requests.RequestException as exc:
        raise HostEnvironmentError(f"Failed to download {what} from {url} ({exc}). Please check internet connection.")
    if response.status_code < 200 or response.status_code >= 300:
        raise HostEnvironmentError(f"Failed to download {what} from {url}: HTTP {response.status_code}")
    return response


def ensure_base_packages(apt: AptInstaller) -> list[str]:
    missing = [pkg for pkg in BASE_PACKAGES if not apt.is_installed(pkg)]
    if not missing:
        logger.info("%s Basic prerequisites already installed", LOG_PREFIX)
        return []
    logger.info("%s Installing basic prerequisites: %s", LOG_PREFIX, " ".join(missing))
    apt.install(missing)
    return missing


def add_docker_repository(runner: CommandRunner, apt: AptInstaller) -> None:
    response = _download(DOCKER_GPG_URL, what="Docker's GPG key")
    runner.run(
        ["gpg", "--batch", "--yes", "--dearmor", "-o", DOCKER_KEYRING],
        privileged=True,
        input_text=response.text,
        action="Failed to install Docker's GPG key",
    )

    arch = runner.run(["dpkg", "--print-architecture"], action="Failed to detect CPU architecture").stdout.strip()
    codename = runner.run(["lsb_release", "-cs"], action="Failed to detect Ubuntu codename").stdout.strip()
    source_line = (
        f"deb [arch={arch} signed-by={DOCKER_KEYRING}] "
        f"https://download.docker.com/linux/ubuntu {codename} stable\n"
    )
    runner.write_file(DOCKER_APT_LIST, source_line, action="Failed to add the Docker apt repository")
    apt.invalidate_cache()


def ensure_docker(runner: CommandRunner, apt: AptInstaller) -> ToolStatus:
    present, working, version = _probe(runner, "docker", ["docker", "--version"])
    if working:
        logger.info("%s Docker is already installed: %s", LOG_PREFIX, version)
        return ToolStatus(name="docker", action=ACTION_PRESENT, version=version)

    action = ACTION_INSTALLED
    if present:
        logger.warning("%s Docker command exists but is not working properly, reinstalling...", LOG_PREFIX)
        apt.remove(LEGACY_DOCKER_PACKAGES)
        action = ACTION_REINSTALLED
    else:
        logger.info("%s Docker not found, installing...", LOG_PREFIX)

    add_docker_repository(runner, apt)
    apt.install(DOCKER_PACKAGES)
    _enable_service(runner, "docker")

    _, working, version = _probe(runner, "docker", ["docker", "--version"])
    if not working:
        raise HostEnvironmentError("Docker was installed but `docker --version` still fails")
    logger.info("%s Docker installed successfully: %s", LOG_PREFIX, version)
    return ToolStatus(name="docker", action=action, version=version)


def _compose_version(runner: CommandRunner) -> str:
    plugin = runner.run(["docker", "compose", "version"], privileged=True, check=False)
    if plugin.ok:
        return _first_line(plugin)
    if runner.which("docker-compose"):
        standalone = runner.run(["docker-compose", "--version"], check=False)
        if standalone.ok:
            return _first_line(standalone)
    return ""


def install_standalone_compose(runner: CommandRunner) -> None:
    release = _download(COMPOSE_RELEASES_URL, what="the latest Docker Compose release")
    try:
        metadata = release.json()
    except ValueError as exc:
        raise HostEnvironmentError(f"Docker Compose release metadata is not valid JSON: {exc}")
    tag = str(metadata.get("tag_name") or "").strip() if isinstance(metadata, dict) else ""
    if not tag:
        raise HostEnvironmentError("Docker Compose release metadata did not include a tag_name")

    system = platform.system()
    machine = platform.machine()
    url = f"https://github.com/docker/compose/releases/download/{tag}/docker-compose-{system}-{machine}"
    runner.run(
        ["curl", "-fsSL", url, "-o", COMPOSE_STANDALONE_PATH],
        privileged=True,
        action=f"Failed to download Docker Compose {tag}",
    )
    runner.run(
        ["chmod", "+x", COMPOSE_STANDALONE_PATH],
        privileged=True,
        action="Failed to make docker-compose executable",
    )


def ensure_compose(runner: CommandRunner, apt: AptInstaller) -> ToolStatus:
    """Make ``docker compose`` (or ``docker-compose``) available.

    A failed apt install of the compose plugin is not fatal here: the plugin
    is missing from some apt mirrors, so the standalone release binary is
    tried next. Only when neither works does this raise.
    """
    version = _compose_version(runner)
    if version:
        logger.info("%s Docker Compose is available: %s", LOG_PREFIX, version)
        return ToolStatus(name="docker compose", action=ACTION_PRESENT, version=version)

    logger.info("%s Docker Compose not found, installing the compose plugin...", LOG_PREFIX)
    try:
        apt.install(["docker-compose-plugin"])
    except CommandError as exc:
        logger.warning("%s %s", LOG_PREFIX, exc)

    version = _compose_version(runner)
    if not version:
        logger.info("%s Installing Docker Compose standalone...", LOG_PREFIX)
        install_standalone_compose(runner)
        version = _compose_version(runner)
    if not version:
        raise HostEnvironmentError("Docker Compose was installed but is still not available")
    return ToolStatus(name="docker compose", action=ACTION_INSTALLED, version=version)


def _ensure_apt_tool(
    runner: CommandRunner,
    apt: AptInstaller,
    *,
    name: str,
    executable: str,
    version_cmd: list[str],
    packages: list[str],
    service: str | None = None,
) -> ToolStatus:
    present, working, version = _probe(runner, executable, version_cmd)
    if working:
        logger.info("%s %s is already installed: %s", LOG_PREFIX, name, version)
        return ToolStatus(name=name, action=ACTION_PRESENT, version=version)

    if present:
        logger.warning("%s %s exists but is not working properly, reinstalling...", LOG_PREFIX, name)
        apt.install(packages, reinstall=True)
        action = ACTION_REINSTALLED
    else:
        logger.info("%s %s not found, installing...", LOG_PREFIX, name)
        apt.install(packages)
        action = ACTION_INSTALLED

    if service:
        _enable_service(runner, service)

    _, working, version = _probe(runner, executable, version_cmd)
    if not working:
        raise HostEnvironmentError(f"{name} was installed but `{' '.join(version_cmd)}` still fails")
    logger.info("%s %s installed successfully: %s", LOG_PREFIX, name, version)
    return ToolStatus(name=name, action=action, version=version)


def ensure_nginx(runner: CommandRunner, apt: AptInstaller) -> ToolStatus:
    return _ensure_apt_tool(
        runner,
        apt,
        name="nginx",
        executable="nginx",
        version_cmd=["nginx", "-v"],
        packages=NGINX_PACKAGES,
        service="nginx",
    )


def ensure_certbot(runner: CommandRunner, apt: AptInstaller) -> ToolStatus:
    return _ensure_apt_tool(
        runner,
        apt,
        name="certbot",
        executable="certbot",
        version_cmd=["certbot", "--version"],
        packages=CERTBOT_PACKAGES,
    )


def ensure_docker_group(runner: CommandRunner) -> bool:
    """Add a non-root invoker to the ``docker`` group; True when it changed."""
    if runner.is_root:
        return False
    user = runner.invoking_user()
    groups = runner.run(["id", "-nG", user], check=False)
    if groups.ok and "docker" in groups.stdout.split():
        return False
    runner.run(
        ["usermod", "-aG", "docker", user],
        privileged=True,
        action=f"Failed to add {user} to the docker group",
    )
    logger.info("%s User %s added to docker group (takes effect after logout/login)", LOG_PREFIX, user)
    return True


def verify_prerequisites(runner: CommandRunner) -> None:
    docker_ok = (
        runner.run(["docker", "--version"], check=False).ok
        and runner.run(["docker", "info"], privileged=True, check=False).ok
    )
    if not docker_ok:
        raise HostEnvironmentError("✗ Docker verification failed")
    if not _compose_version(runner):
        raise HostEnvironmentError("✗ Docker Compose verification failed")
    if not runner.run(["nginx", "-v"], check=False).ok:
        raise HostEnvironmentError("✗ Nginx verification failed")
    if not runner.run(["certbot", "--version"], check=False).ok:
        raise HostEnvironmentError("✗ Certbot verification failed")


def collect_system_info(runner: CommandRunner) -> dict[str, str]:
    os_description = runner.run(["lsb_release", "-ds"], check=False)
    return {
        "OS": _first_line(os_description) or platform.platform(),
        "Docker": _first_line(runner.run(["docker", "--version"], check=False)),
        "Docker Compose": _compose_version(runner),
        # nginx -v reports on stderr
        "Nginx": _first_line(runner.run(["nginx", "-v"], check=False)),
        "Certbot": _first_line(runner.run(["certbot", "--version"], check=False)),
    }


def ensure_prerequisites(runner: CommandRunner) -> PrerequisiteReport:
    apt = AptInstaller(runner)
    report = PrerequisiteReport()

    report.base_packages_installed = ensure_base_packages(apt)
    report.tools.append(ensure_docker(runner, apt))
    report.docker_group_added = ensure_docker_group(runner)
    report.tools.append(ensure_compose(runner, apt))
    report.tools.append(ensure_nginx(runner, apt))
    report.tools.append(ensure_certbot(runner, apt))

    verify_prerequisites(runner)
    report.system_info = collect_system_info(runner)
    return report
