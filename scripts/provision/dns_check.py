"""Check that the domain already points at this host before anything is created."""
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass

import requests

from scripts.provision.command_runner import CommandRunner
from scripts.provision.errors import DnsLookupError, DnsMismatchError
from scripts.provision.provision_config import ProvisionConfig


LOG_PREFIX = "[DNS]"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DnsVerification:
    domain: str
    host_ip: str
    domain_ip: str


def _as_ip(text: str) -> str:
    candidate = str(text or "").strip()
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return ""
    return candidate


def fetch_public_ip(url: str, *, timeout: float = 10) -> str:
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise DnsLookupError(
            f"Failed to get server's public IP address from {url} ({exc}). Please check internet connection."
        )
    ip = _as_ip(response.text) if response.ok else ""
    if not ip:
        raise DnsLookupError(
            f"Failed to get server's public IP address from {url}. Please check internet connection."
        )
    return ip


def _dig_lookup(runner: CommandRunner, domain: str, record_type: str) -> str:
    result = runner.run(["dig", "+short", domain, record_type], check=False)
    if not result.ok:
        return ""
    # CNAME targets come first; take the first line that is an address.
    for line in result.stdout.splitlines():
        ip = _as_ip(line)
        if ip:
            return ip
    return ""


def _nslookup_lookup(runner: CommandRunner, domain: str, record_type: str) -> str:
    result = runner.run(["nslookup", f"-type={record_type}", domain], check=False)
    if not result.ok:
        return ""
    seen_name = False
    for line in result.stdout.splitlines():
        stripped = line.strip()
        if stripped.startswith("Name:"):
            seen_name = True
            continue
        if seen_name and stripped.startswith("Address:"):
            ip = _as_ip(stripped.split(":", 1)[1])
            if ip:
                return ip
    return ""


def resolve_domain(runner: CommandRunner, domain: str, *, record_type: str = "A") -> str:
    """Resolve *domain* with dig, falling back to nslookup; '' when unresolved."""
    ip = _dig_lookup(runner, domain, record_type)
    if ip:
        return ip
    logger.debug("%s dig returned nothing for %s, trying nslookup", LOG_PREFIX, domain)
    return _nslookup_lookup(runner, domain, record_type)


def mismatch_message(*, domain: str, host_ip: str, domain_ip: str) -> str:
    return (
        "DNS configuration error!\n\n"
        f"Your domain '{domain}' currently points to: {domain_ip}\n"
        f"But this server's public IP is: {host_ip}\n\n"
        "Please configure your DNS:\n"
        "1. Go to your domain registrar (GoDaddy, Cloudflare, etc.)\n"
        f"2. Create an A record: {domain} → {host_ip}\n"
        "3. Wait for DNS propagation (5-60 minutes)\n"
        f"4. Test with: nslookup {domain}\n"
        "5. Run this script again when DNS is configured"
    )


def verify_dns(config: ProvisionConfig, runner: CommandRunner) -> DnsVerification:
    logger.info("%s Verifying DNS configuration for %s...", LOG_PREFIX, config.domain)
    host_ip = fetch_public_ip(config.public_ip_url, timeout=config.public_ip_timeout_seconds)

    record_type = "AAAA" if ipaddress.ip_address(host_ip).version == 6 else "A"
    domain_ip = resolve_domain(runner, config.domain, record_type=record_type)
    if not domain_ip:
        raise DnsLookupError(
            f"Failed to resolve domain {config.domain}. "
            "Please check if the domain exists and is properly configured."
        )

    if domain_ip != host_ip:
        raise DnsMismatchError(
            mismatch_message(domain=config.domain, host_ip=host_ip, domain_ip=domain_ip),
            expected_ip=host_ip,
            actual_ip=domain_ip,
        )

    logger.info("%s DNS verification passed: %s → %s", LOG_PREFIX, config.domain, host_ip)
    return DnsVerification(domain=config.domain, host_ip=host_ip, domain_ip=domain_ip)
