"""Tests for environment driven configuration."""

import pytest

from devproxy import config as config_module
from devproxy.config import ConfigError, load_config
from devproxy.policy import create_backend_proxy_from_config

ENV_VARS = [
    "PROXY_BACKEND",
    "PROXY_PATHS",
    "PROXY_SUBPATHS",
    "PROXY_INSECURE",
    "PROXY_ORIGIN_REWRITES",
    "SSL_ADDITIONAL_DOMAINS",
    "SSL_ADDITIONAL_IPS",
    "SYMMETRIC_HOME",
    "GENERATE_CERT",
    "PROXY_FORCE_CERT",
    "PROXY_CERT_ISSUER",
    "CERT_SERVER",
    "CERT_SERVER_HOST",
    "CERT_SERVER_PORT",
    "PROXY_LOG_PATH",
    "DEBUG",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.setattr(config_module, "load_dotenv", lambda **kw: False)
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = load_config()
    assert cfg.backend == ""
    assert cfg.paths == () and cfg.subpaths == ()
    assert cfg.insecure is False
    assert cfg.home is None
    assert cfg.issuer == "cryptography"
    assert (cfg.cert_server, cfg.cert_server_host, cfg.cert_server_port) == (False, "0.0.0.0", 3007)
    assert cfg.debug is False


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv("PROXY_BACKEND", "https://staging.example.com")
    monkeypatch.setenv("PROXY_PATHS", "graphql, /media/ ,,")
    monkeypatch.setenv("PROXY_INSECURE", "TRUE")
    monkeypatch.setenv("PROXY_ORIGIN_REWRITES", "https://staging.example.com")
    monkeypatch.setenv("SSL_ADDITIONAL_IPS", "10.0.0.5")
    monkeypatch.setenv("SYMMETRIC_HOME", "/tmp/sym")
    monkeypatch.setenv("CERT_SERVER", "true")
    monkeypatch.setenv("CERT_SERVER_PORT", "4000")
    monkeypatch.setenv("PROXY_CERT_ISSUER", "OpenSSL")
    monkeypatch.setenv("DEBUG", "express,devproxy")

    cfg = load_config()
    assert cfg.backend == "https://staging.example.com"
    assert cfg.paths == ("graphql", "/media/")
    assert cfg.insecure is True
    assert cfg.origin_rewrites == ("https://staging.example.com",)
    assert cfg.additional_ips == ("10.0.0.5",)
    assert cfg.home == "/tmp/sym"
    assert cfg.cert_server is True
    assert cfg.cert_server_port == 4000
    assert cfg.issuer == "openssl"
    assert cfg.debug is True


def test_bad_port(monkeypatch):
    monkeypatch.setenv("CERT_SERVER_PORT", "http")
    with pytest.raises(ConfigError):
        load_config()


def test_bad_issuer(monkeypatch):
    monkeypatch.setenv("PROXY_CERT_ISSUER", "gnutls")
    with pytest.raises(ConfigError):
        load_config()


def test_policy_from_config(monkeypatch):
    monkeypatch.setenv("PROXY_BACKEND", "http://b1/")
    monkeypatch.setenv("PROXY_PATHS", "graphql")
    monkeypatch.setenv("PROXY_INSECURE", "true")
    monkeypatch.setenv("DEBUG", "true")

    policy = create_backend_proxy_from_config(load_config())
    assert policy.target == "http://b1"
    assert policy.routes.paths[0] == "graphql"
    assert policy.protocol_rewrite == "http"
    assert policy.log_level == "debug"
    assert policy.ssl is None


def test_policy_from_config_passes_log_path_to_cert_server(monkeypatch, tmp_path):
    from devproxy import server

    from conftest import FakeIssuer, FakeTrustStore, StaticDiscovery

    monkeypatch.setenv("PROXY_BACKEND", "https://staging.example.com")
    monkeypatch.setenv("GENERATE_CERT", "true")
    monkeypatch.setenv("CERT_SERVER", "true")
    monkeypatch.setenv("SYMMETRIC_HOME", str(tmp_path))
    monkeypatch.setenv("PROXY_LOG_PATH", str(tmp_path / "access"))
    started = []
    monkeypatch.setattr(server, "start_cert_server", lambda ca_cert, **kw: started.append(kw))

    create_backend_proxy_from_config(
        load_config(),
        issuer=FakeIssuer(),
        trust_store=FakeTrustStore(),
        discover=StaticDiscovery(),
    )
    assert started == [{"host": "0.0.0.0", "port": 3007, "log_path": str(tmp_path / "access")}]
