#!/usr/bin/env python3
"""Provision n8n behind nginx with a Let's Encrypt certificate on a fresh Ubuntu host.

Phases run strictly in order and the first failure aborts the run:

1. prerequisites: Docker + compose plugin, nginx, certbot
2. deployment: no existing container, DNS points here, pull + run + wait
3. exposure: nginx site, config test, restart, certbot, HTTPS probe

Only a failing HTTPS probe at the very end is downgraded to a warning.

Security note: this script shells out to apt-get, docker, nginx, systemctl and
certbot, elevating with ``sudo -n`` when not run as root.
"""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from scripts.provision import app_deploy, dns_check, nginx_site, prerequisites
from scripts.provision.command_runner import CommandRunner
from scripts.provision.errors import ProvisionError
from scripts.provision.provision_config import ENV_LOG_LEVEL, ProvisionConfig, build_config


LOG_NAME = "[n8n-provision]"
STEP_COLOR = "\033[95m"
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
RED = "\033[0;31m"
COLOR_RESET = "\033[0m"


class Stage(str, Enum):
    START = "START"
    VALIDATED = "VALIDATED"
    PREREQS_READY = "PREREQS_READY"
    DNS_CONFIRMED = "DNS_CONFIRMED"
    CONTAINER_RUNNING = "CONTAINER_RUNNING"
    PROXY_CONFIGURED = "PROXY_CONFIGURED"
    CERT_ISSUED = "CERT_ISSUED"
    DONE = "DONE"
    DONE_WITH_WARNING = "DONE_WITH_WARNING"
    ABORTED = "ABORTED"


@dataclass
class ProvisionRun:
    stage: Stage = Stage.START
    history: list[Stage] = field(default_factory=lambda: [Stage.START])
    failed_after: Stage | None = None
    error: ProvisionError | None = None
    prerequisites: prerequisites.PrerequisiteReport | None = None
    dns: dns_check.DnsVerification | None = None
    container: app_deploy.ContainerStatus | None = None
    https_ok: bool = False

    def advance(self, stage: Stage) -> None:
        self.stage = stage
        self.history.append(stage)

    def abort(self, exc: ProvisionError) -> None:
        self.failed_after = self.stage
        self.error = exc
        self.advance(Stage.ABORTED)


class StepLog:
    """Console output for the operator: numbered steps plus status lines."""

    def __init__(self) -> None:
        self.step_number = 0

    def step(self, message: str, *, icon: str = "🚀") -> None:
        self.step_number += 1
        print(f"{STEP_COLOR}{LOG_NAME} {icon} Step {self.step_number}: {message}{COLOR_RESET}")

    def info(self, message: str, *, icon: str = "ℹ️") -> None:
        print(f"{LOG_NAME} {icon} {message}")

    def success(self, message: str) -> None:
        print(f"{GREEN}{LOG_NAME} ✅ {message}{COLOR_RESET}")

    def warning(self, message: str) -> None:
        print(f"{YELLOW}{LOG_NAME} ⚠️ {message}{COLOR_RESET}")


def run_provisioning(config: ProvisionConfig, runner: CommandRunner, log: StepLog | None = None) -> ProvisionRun:
    """Run every phase in order; raises the first :class:`ProvisionError`.

    The returned (or, on failure, the exception's) run records how far it got.
    """
    log = log or StepLog()
    run = ProvisionRun()
    run.advance(Stage.VALIDATED)

    try:
        log.step("Checking system requirements and installing prerequisites", icon="🧰")
        if config.skip_prerequisites:
            log.warning("Skipping prerequisite installation (--skip-prerequisites)")
        else:
            report = prerequisites.ensure_prerequisites(runner)
            run.prerequisites = report
            if report.installed_anything:
                log.success("All prerequisites are installed and ready for n8n deployment")
            else:
                log.success("All prerequisites already satisfied; nothing installed")
            for key, value in report.system_info.items():
                log.info(f"{key}: {value}", icon="  -")
        run.advance(Stage.PREREQS_READY)

        log.step(f"Checking for an existing {config.container_name} container", icon="🐳")
        app_deploy.ensure_no_existing_container(runner, config.container_name)

        log.step(f"Verifying DNS for {config.domain}", icon="🌍")
        run.dns = dns_check.verify_dns(config, runner)
        log.success(f"DNS verification passed: {config.domain} → {run.dns.host_ip}")
        run.advance(Stage.DNS_CONFIRMED)

        log.step(f"Deploying {config.app_image} on port {config.app_port}", icon="📦")
        run.container = app_deploy.deploy_application(config, runner)
        if run.container:
            log.info(f"{run.container.name}: {run.container.status} {run.container.ports}".rstrip())
        log.success(f"n8n is running locally on port {config.app_port}")
        run.advance(Stage.CONTAINER_RUNNING)

        log.step(f"Configuring nginx and SSL for {config.domain}", icon="🔒")

        def on_progress(event: str) -> None:
            if event == "proxy_configured":
                run.advance(Stage.PROXY_CONFIGURED)
            elif event == "cert_issued":
                run.advance(Stage.CERT_ISSUED)

        run.https_ok = nginx_site.expose_publicly(runner, config, progress=on_progress)
    except ProvisionError as exc:
        run.abort(exc)
        exc.run = run
        raise

    if run.https_ok:
        log.success("SSL certificate is working correctly")
        run.advance(Stage.DONE)
    else:
        log.warning("SSL certificate test failed, but this might be normal if the site is still loading")
        run.advance(Stage.DONE_WITH_WARNING)
    return run


def print_summary(config: ProvisionConfig, run: ProvisionRun, log: StepLog) -> None:
    log.info("🎉 Installation Complete!", icon="")
    log.info(f"Public URL: https://{config.domain}", icon="🌐")
    log.info("SSL Certificate: Active", icon="🔒")
    log.info(f"n8n Container: {config.container_name}, running on port {config.app_port}", icon="🐳")
    log.info(f"SSL Email: {config.email}", icon="📧")
    log.info("Management Commands:", icon="🔧")
    for label, command in (
        ("Check status", f"docker ps --filter name={config.container_name}"),
        ("View logs", f"docker logs {config.container_name}"),
        ("Restart", f"docker restart {config.container_name}"),
        ("Stop", f"docker stop {config.container_name}"),
    ):
        log.info(f"{label}: {command}", icon="  -")
    log.info("Security Notes:", icon="🛡️")
    log.info("SSL certificate will auto-renew via certbot", icon="  •")
    log.info("HTTP traffic automatically redirects to HTTPS", icon="  •")
    log.info(f"n8n data is stored in {config.data_dir}", icon="  •")
    if run.prerequisites and run.prerequisites.docker_group_added:
        log.warning(
            "IMPORTANT: You were added to the docker group; log out and back in for it to take effect"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        allow_abbrev=False,
        description="Install n8n behind nginx with a Let's Encrypt certificate on this Ubuntu host",
        epilog='Example: n8n-provision --domain="joey.com" --email="user@gmail.com"',
    )
    parser.add_argument("--domain", default=None, help="Your domain name (e.g., example.com)")
    parser.add_argument("--email", default=None, help="Your email address for SSL certificate registration")
    parser.add_argument(
        "--env-file",
        default=None,
        help="dotenv file with tunables such as N8N_PORT or N8N_IMAGE (default: ./.env.provision)",
    )
    parser.add_argument(
        "--skip-prerequisites",
        action="store_true",
        help="Skip the install phase (resolution: CLI flag, else PROVISION_SKIP_PREREQUISITES)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python log level for step details (resolution: CLI -> PROVISION_LOG_LEVEL -> INFO)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    log_level = str(args.log_level or os.getenv(ENV_LOG_LEVEL) or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log = StepLog()
    try:
        config = build_config(
            domain=args.domain,
            email=args.email,
            env_file=Path(args.env_file) if args.env_file else None,
            skip_prerequisites=bool(args.skip_prerequisites),
        )
        log.success(f"Domain: {config.domain}")
        log.success(f"Email: {config.email}")

        runner = CommandRunner.resolve()
        run = run_provisioning(config, runner, log)
    except ProvisionError as exc:
        run = getattr(exc, "run", None)
        where = f" after {run.failed_after.value}" if run and run.failed_after else ""
        raise SystemExit(f"{RED}{LOG_NAME} ❌ [{exc.kind}] Aborted{where}: {exc}{COLOR_RESET}")
    except KeyboardInterrupt:
        print(f"{RED}{LOG_NAME} ❌ Interrupted; no rollback was attempted{COLOR_RESET}")
        raise SystemExit(130)

    print_summary(config, run, log)
    log.success(f"🚀 Your n8n instance is ready at: https://{config.domain}")


if __name__ == "__main__":
    main()
