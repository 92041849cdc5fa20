"""Validated, immutable settings for one provisioning run.

Tunables resolve as: CLI flag -> environment variable -> ``.env.provision``
-> built-in default.  Domain and email come from the command line only.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values

from scripts.provision.errors import InputValidationError


ENV_N8N_IMAGE = "N8N_IMAGE"
ENV_N8N_CONTAINER_NAME = "N8N_CONTAINER_NAME"
ENV_N8N_PORT = "N8N_PORT"
ENV_N8N_DATA_DIR = "N8N_DATA_DIR"
ENV_N8N_CONTAINER_DATA_DIR = "N8N_CONTAINER_DATA_DIR"
ENV_NGINX_SITES_AVAILABLE = "NGINX_SITES_AVAILABLE"
ENV_NGINX_SITES_ENABLED = "NGINX_SITES_ENABLED"
ENV_PUBLIC_IP_URL = "PUBLIC_IP_URL"
ENV_READINESS_ATTEMPTS = "READINESS_ATTEMPTS"
ENV_READINESS_INTERVAL_SECONDS = "READINESS_INTERVAL_SECONDS"
ENV_SKIP_PREREQUISITES = "PROVISION_SKIP_PREREQUISITES"
ENV_LOG_LEVEL = "PROVISION_LOG_LEVEL"

DEFAULT_ENV_FILE = ".env.provision"

DEFAULT_APP_IMAGE = "n8nio/n8n"
DEFAULT_CONTAINER_NAME = "n8n"
DEFAULT_APP_PORT = 5678
DEFAULT_CONTAINER_DATA_DIR = "/home/node/.n8n"
DEFAULT_NGINX_SITES_AVAILABLE = "/etc/nginx/sites-available"
DEFAULT_NGINX_SITES_ENABLED = "/etc/nginx/sites-enabled"
DEFAULT_PUBLIC_IP_URL = "https://ifconfig.me/ip"
DEFAULT_READINESS_ATTEMPTS = 30
DEFAULT_READINESS_INTERVAL_SECONDS = 5

_DOMAIN_CHARS = re.compile(r"[A-Za-z0-9.-]+")
_WHITESPACE = re.compile(r"\s")
_EMAIL_SHAPE = re.compile(r"[^@]+@[^@]+\.[^@]+")


def validate_domain(domain: str) -> tuple[bool, str]:
    # Leading/trailing dots and hyphens are accepted on purpose.
    if not domain:
        return False, "domain is empty"
    if _WHITESPACE.search(domain):
        return False, "domain contains whitespace"
    if "." not in domain:
        return False, "domain must contain at least one dot"
    if not _DOMAIN_CHARS.fullmatch(domain):
        return False, "domain may only contain letters, digits, dots and hyphens"
    return True, ""


def validate_email(email: str) -> tuple[bool, str]:
    if not email:
        return False, "email is empty"
    if not _EMAIL_SHAPE.fullmatch(email):
        return False, "email must look like name@host.tld"
    return True, ""


def read_dotenv_key(*, dotenv_path: Path, key: str) -> str:
    if not dotenv_path.exists():
        return ""
    raw = dotenv_values(dotenv_path)
    return str(raw.get(key) or "").strip()


def resolve_setting(*, env_key: str, env_file: Path, default: str = "") -> str:
    resolved = str(os.getenv(env_key) or "").strip()
    if not resolved:
        resolved = read_dotenv_key(dotenv_path=env_file, key=env_key)
    return resolved or default


def parse_boolish(value: str, *, default: bool = False) -> bool:
    normalized = str(value or "").strip().lower()
    if not normalized:
        return default
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _parse_int(raw: str, *, name: str, minimum: int, maximum: int | None = None) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise InputValidationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"{minimum}-{maximum}" if maximum is not None else f">= {minimum}"
        raise InputValidationError(f"{name} must be in range {bound}, got {value}")
    return value


@dataclass(frozen=True)
class ProvisionConfig:
    domain: str
    email: str
    app_image: str = DEFAULT_APP_IMAGE
    container_name: str = DEFAULT_CONTAINER_NAME
    app_port: int = DEFAULT_APP_PORT
    data_dir: Path = Path.home() / ".n8n"
    container_data_dir: str = DEFAULT_CONTAINER_DATA_DIR
    nginx_sites_available: str = DEFAULT_NGINX_SITES_AVAILABLE
    nginx_sites_enabled: str = DEFAULT_NGINX_SITES_ENABLED
    public_ip_url: str = DEFAULT_PUBLIC_IP_URL
    public_ip_timeout_seconds: int = 10
    readiness_attempts: int = DEFAULT_READINESS_ATTEMPTS
    readiness_interval_seconds: float = DEFAULT_READINESS_INTERVAL_SECONDS
    https_probe_delay_seconds: float = 5
    skip_prerequisites: bool = False

    @property
    def public_url(self) -> str:
        return f"https://{self.domain}/"

    @property
    def local_url(self) -> str:
        return f"http://localhost:{self.app_port}"

    @property
    def site_available_path(self) -> str:
        return f"{self.nginx_sites_available.rstrip('/')}/{self.domain}"

    @property
    def site_enabled_path(self) -> str:
        return f"{self.nginx_sites_enabled.rstrip('/')}/{self.domain}"


def validate_inputs(*, domain: str, email: str) -> None:
    if not domain:
        raise InputValidationError('Domain is required. Use --domain="your-domain.com"')
    if not email:
        raise InputValidationError('Email is required. Use --email="your-email@gmail.com"')

    ok, reason = validate_domain(domain)
    if not ok:
        raise InputValidationError(
            f"Invalid domain format: {domain} ({reason}). Please provide a valid domain (e.g., example.com)"
        )
    ok, reason = validate_email(email)
    if not ok:
        raise InputValidationError(
            f"Invalid email format: {email} ({reason}). Please provide a valid email address"
        )


def build_config(
    *,
    domain: str | None,
    email: str | None,
    env_file: Path | None = None,
    skip_prerequisites: bool = False,
) -> ProvisionConfig:
    """Validate CLI input and resolve tunables into a :class:`ProvisionConfig`."""
    # Not stripped: surrounding whitespace must fail domain validation.
    domain = str(domain or "")
    email = str(email or "").strip()
    validate_inputs(domain=domain, email=email)

    env_path = env_file or Path.cwd() / DEFAULT_ENV_FILE

    def setting(env_key: str, default: str = "") -> str:
        return resolve_setting(env_key=env_key, env_file=env_path, default=default)

    app_port = _parse_int(setting(ENV_N8N_PORT, str(DEFAULT_APP_PORT)), name=ENV_N8N_PORT, minimum=1, maximum=65535)
    readiness_attempts = _parse_int(
        setting(ENV_READINESS_ATTEMPTS, str(DEFAULT_READINESS_ATTEMPTS)),
        name=ENV_READINESS_ATTEMPTS,
        minimum=1,
    )
    readiness_interval = _parse_int(
        setting(ENV_READINESS_INTERVAL_SECONDS, str(DEFAULT_READINESS_INTERVAL_SECONDS)),
        name=ENV_READINESS_INTERVAL_SECONDS,
        minimum=0,
    )

    data_dir_raw = setting(ENV_N8N_DATA_DIR)
    data_dir = Path(data_dir_raw).expanduser() if data_dir_raw else Path.home() / ".n8n"

    resolved_skip = bool(skip_prerequisites)
    if not resolved_skip:
        resolved_skip = parse_boolish(setting(ENV_SKIP_PREREQUISITES), default=False)

    return ProvisionConfig(
        domain=domain,
        email=email,
        app_image=setting(ENV_N8N_IMAGE, DEFAULT_APP_IMAGE),
        container_name=setting(ENV_N8N_CONTAINER_NAME, DEFAULT_CONTAINER_NAME),
        app_port=app_port,
        data_dir=data_dir,
        container_data_dir=setting(ENV_N8N_CONTAINER_DATA_DIR, DEFAULT_CONTAINER_DATA_DIR),
        nginx_sites_available=setting(ENV_NGINX_SITES_AVAILABLE, DEFAULT_NGINX_SITES_AVAILABLE),
        nginx_sites_enabled=setting(ENV_NGINX_SITES_ENABLED, DEFAULT_NGINX_SITES_ENABLED),
        public_ip_url=setting(ENV_PUBLIC_IP_URL, DEFAULT_PUBLIC_IP_URL),
        readiness_attempts=readiness_attempts,
        readiness_interval_seconds=readiness_interval,
        skip_prerequisites=resolved_skip,
    )
