from __future__ import annotations

from pathlib import Path

import pytest
import requests

from scripts.provision import nginx_site
from scripts.provision.errors import CertificateError, ProxyConfigError
from scripts.provision.provision_config import ProvisionConfig


@pytest.fixture
def config(tmp_path: Path) -> ProvisionConfig:
    available = tmp_path / "sites-available"
    enabled = tmp_path / "sites-enabled"
    available.mkdir()
    enabled.mkdir()
    return ProvisionConfig(
        domain="example.com",
        email="user@gmail.com",
        nginx_sites_available=str(available),
        nginx_sites_enabled=str(enabled),
        https_probe_delay_seconds=0,
    )


def test_render_site_config_fills_domain_and_port() -> None:
    text = nginx_site.render_site_config(domain="example.com", port=5678)
    assert text.startswith("server {\n    listen 80;\n    server_name example.com;\n")
    assert "proxy_pass http://localhost:5678;" in text
    assert "proxy_set_header Host $host;" in text
    assert "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;" in text
    assert 'proxy_set_header Connection "upgrade";' in text
    assert "proxy_http_version 1.1;" in text
    assert "proxy_buffering off;" in text
    assert text.count("{") == text.count("}") == 2


def test_configure_reverse_proxy_runs_steps_in_order(fake_runner, config) -> None:
    default_site = Path(config.nginx_sites_enabled) / "default"
    default_site.write_text("server {}\n", encoding="utf-8")

    nginx_site.configure_reverse_proxy(fake_runner, config)

    assert fake_runner.calls == [
        ["tee", config.site_available_path],
        ["rm", "-f", str(default_site)],
        ["ln", "-sf", config.site_available_path, config.site_enabled_path],
        ["nginx", "-t"],
        ["systemctl", "restart", "nginx"],
        ["systemctl", "enable", "nginx"],
    ]
    assert "server_name example.com;" in fake_runner.inputs[config.site_available_path]
    assert fake_runner.privileged_calls == fake_runner.calls


def test_no_default_site_means_nothing_to_remove(fake_runner, config) -> None:
    assert nginx_site.disable_default_site(fake_runner, config) is False
    assert fake_runner.calls == []


def test_failed_config_test_never_restarts_nginx(fake_runner, config) -> None:
    fake_runner.on("nginx", "-t", returncode=1, stderr='nginx: [emerg] unexpected "}" in /etc/nginx/sites-enabled/example.com:9')

    with pytest.raises(ProxyConfigError) as excinfo:
        nginx_site.configure_reverse_proxy(fake_runner, config)

    assert "configuration test failed" in str(excinfo.value)
    assert "[emerg]" in str(excinfo.value)
    assert fake_runner.ran("systemctl") == []


def test_build_certbot_cmd_is_non_interactive() -> None:
    cmd = nginx_site.build_certbot_cmd(domain="example.com", email="user@gmail.com")
    assert cmd == [
        "certbot",
        "--nginx",
        "--agree-tos",
        "--no-eff-email",
        "--email",
        "user@gmail.com",
        "-d",
        "example.com",
        "--non-interactive",
    ]


def test_obtain_certificate_failure(fake_runner, config) -> None:
    fake_runner.on("certbot", returncode=1, stderr="Challenge failed for domain example.com")

    with pytest.raises(CertificateError, match="Challenge failed"):
        nginx_site.obtain_certificate(fake_runner, config)


def test_probe_https_failure_is_soft(monkeypatch) -> None:
    waits: list[float] = []

    def fake_get(url, timeout):
        raise requests.exceptions.SSLError("certificate verify failed")

    monkeypatch.setattr("scripts.provision.nginx_site.time.sleep", waits.append)
    monkeypatch.setattr("scripts.provision.nginx_site.requests.get", fake_get)

    assert nginx_site.probe_https("example.com", delay_seconds=5) is False
    assert waits == [5]


def test_probe_https_success(monkeypatch, dummy_response) -> None:
    urls: list[str] = []

    def fake_get(url, timeout):
        urls.append(url)
        return dummy_response(200)

    monkeypatch.setattr("scripts.provision.nginx_site.requests.get", fake_get)

    assert nginx_site.probe_https("example.com", delay_seconds=0) is True
    assert urls == ["https://example.com"]


def test_expose_publicly_reports_progress(fake_runner, config, monkeypatch, dummy_response) -> None:
    events: list[str] = []
    monkeypatch.setattr("scripts.provision.nginx_site.requests.get", lambda url, timeout: dummy_response(200))

    out = nginx_site.expose_publicly(fake_runner, config, progress=events.append)

    assert out is True
    assert events == ["proxy_configured", "cert_issued"]
    assert fake_runner.ran("certbot") == [nginx_site.build_certbot_cmd(domain="example.com", email="user@gmail.com")]
