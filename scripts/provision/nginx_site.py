"""Publish the app through an nginx virtual host and a Let's Encrypt certificate.

Writes a site file named after the domain, swaps the default site for it,
validates the merged config before restarting nginx, then lets certbot's
nginx plugin add the HTTPS listener and the HTTP -> HTTPS redirect.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Callable

import requests

from scripts.provision.command_runner import CommandRunner
from scripts.provision.errors import CertificateError, ProxyConfigError
from scripts.provision.provision_config import ProvisionConfig


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LOG_PREFIX = "[NGINX]"
DEFAULT_SITE_NAME = "default"

logger = logging.getLogger(__name__)

# Placeholders: {domain}, {port}.  nginx variables keep their literal $.
SITE_TEMPLATE = """\
server {{
    listen 80;
    server_name {domain};

    location / {{
        proxy_pass http://localhost:{port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_set_header X-Forwarded-Host $server_name;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";
        proxy_http_version 1.1;
        proxy_cache_bypass $http_upgrade;
        proxy_buffering off;
    }}
}}
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def render_site_config(*, domain: str, port: int | str) -> str:
    return SITE_TEMPLATE.format(domain=domain, port=port)


def build_certbot_cmd(*, domain: str, email: str) -> list[str]:
    return [
        "certbot",
        "--nginx",
        "--agree-tos",
        "--no-eff-email",
        "--email",
        email,
        "-d",
        domain,
        "--non-interactive",
    ]


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def write_site_config(runner: CommandRunner, config: ProvisionConfig) -> str:
    path = config.site_available_path
    if os.path.exists(path):
        logger.warning("%s %s already exists and will be overwritten", LOG_PREFIX, path)
    logger.info("%s Creating nginx configuration for %s...", LOG_PREFIX, config.domain)
    runner.write_file(
        path,
        render_site_config(domain=config.domain, port=config.app_port),
        action=f"Failed to write nginx configuration {path}",
    )
    logger.info("%s Nginx configuration created: %s", LOG_PREFIX, path)
    return path


def disable_default_site(runner: CommandRunner, config: ProvisionConfig) -> bool:
    """Remove the enabled ``default`` site; True when one was removed."""
    default_enabled = f"{config.nginx_sites_enabled.rstrip('/')}/{DEFAULT_SITE_NAME}"
    if not os.path.lexists(default_enabled):
        return False
    runner.run(
        ["rm", "-f", default_enabled],
        privileged=True,
        action="Failed to disable the default nginx site",
    )
    logger.info("%s Default nginx site disabled", LOG_PREFIX)
    return True


def enable_site(runner: CommandRunner, config: ProvisionConfig) -> None:
    logger.info("%s Enabling nginx site for %s...", LOG_PREFIX, config.domain)
    runner.run(
        ["ln", "-sf", config.site_available_path, config.site_enabled_path],
        privileged=True,
        action=f"Failed to enable nginx site for {config.domain}",
    )
    logger.info("%s Nginx site enabled for %s", LOG_PREFIX, config.domain)


def check_nginx_config(runner: CommandRunner) -> None:
    logger.info("%s Testing nginx configuration...", LOG_PREFIX)
    result = runner.run(["nginx", "-t"], privileged=True, check=False)
    if not result.ok:
        detail = result.text()
        raise ProxyConfigError(
            "Nginx configuration test failed. Please check the configuration."
            + (f"\n{detail}" if detail else "")
        )
    logger.info("%s Nginx configuration is valid", LOG_PREFIX)


def restart_nginx(runner: CommandRunner) -> None:
    logger.info("%s Restarting nginx...", LOG_PREFIX)
    runner.run(["systemctl", "restart", "nginx"], privileged=True, action="Failed to restart nginx")
    runner.run(["systemctl", "enable", "nginx"], privileged=True, action="Failed to enable nginx on boot")
    logger.info("%s Nginx restarted and enabled", LOG_PREFIX)


def configure_reverse_proxy(runner: CommandRunner, config: ProvisionConfig) -> None:
    write_site_config(runner, config)
    disable_default_site(runner, config)
    enable_site(runner, config)
    check_nginx_config(runner)
    restart_nginx(runner)


def obtain_certificate(runner: CommandRunner, config: ProvisionConfig) -> None:
    logger.info("%s Generating SSL certificate for %s...", LOG_PREFIX, config.domain)
    result = runner.run(
        build_certbot_cmd(domain=config.domain, email=config.email),
        privileged=True,
        check=False,
    )
    if not result.ok:
        detail = result.text()
        raise CertificateError(
            f"certbot failed to obtain a certificate for {config.domain} (exit code {result.returncode})."
            + (f"\n{detail}" if detail else "")
        )
    logger.info("%s SSL certificate generated for %s", LOG_PREFIX, config.domain)


def probe_https(domain: str, *, delay_seconds: float = 5, timeout: float = 10) -> bool:
    """GET ``https://<domain>``; False on any failure, never raises."""
    logger.info("%s Testing SSL certificate for %s...", LOG_PREFIX, domain)
    if delay_seconds:
        time.sleep(delay_seconds)
    try:
        response = requests.get(f"https://{domain}", timeout=timeout)
    except requests.RequestException as exc:
        logger.warning("%s HTTPS probe for %s failed: %s", LOG_PREFIX, domain, exc)
        return False
    if not response.ok:
        logger.warning("%s HTTPS probe for %s returned HTTP %s", LOG_PREFIX, domain, response.status_code)
        return False
    return True


def expose_publicly(
    runner: CommandRunner,
    config: ProvisionConfig,
    *,
    progress: Callable[[str], None] | None = None,
) -> bool:
    """Configure nginx, issue the certificate, then probe the public URL.

    *progress* is called with ``"proxy_configured"`` and ``"cert_issued"``.
    Returns the probe outcome; a failed probe does not undo the certificate.
    """
    configure_reverse_proxy(runner, config)
    if progress:
        progress("proxy_configured")
    obtain_certificate(runner, config)
    if progress:
        progress("cert_issued")
    return probe_https(config.domain, delay_seconds=config.https_probe_delay_seconds)
