"""Error types raised by the provisioning steps.

Steps raise; only :func:`n8n_provision.main` turns an error into a process exit.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scripts.provision.command_runner import CommandResult


class ProvisionError(RuntimeError):
    kind = "provision"
    # set by the driver to the aborted run
    run = None


class InputValidationError(ProvisionError):
    kind = "input"


class HostEnvironmentError(ProvisionError):
    kind = "environment"


class CommandError(HostEnvironmentError):
    def __init__(self, message: str, *, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class PreconditionConflictError(ProvisionError):
    kind = "precondition"


class DnsLookupError(ProvisionError):
    kind = "dns"


class DnsMismatchError(ProvisionError):
    kind = "dns"

    def __init__(self, message: str, *, expected_ip: str, actual_ip: str) -> None:
        super().__init__(message)
        self.expected_ip = expected_ip
        self.actual_ip = actual_ip


class ReadinessTimeoutError(ProvisionError):
    kind = "readiness"


class ProxyConfigError(ProvisionError):
    kind = "proxy"


class CertificateError(ProvisionError):
    kind = "certificate"
