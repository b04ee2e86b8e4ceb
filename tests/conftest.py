"""Shared fixtures: stand-ins for the issuer, trust store and host probes."""

import os
from pathlib import Path

import pytest

from devproxy.discovery import HostInfo
from devproxy.tls import CertPaths
from devproxy.trust import TrustStoreError


class FakeIssuer:
    """Writes random bytes where real key material would go and records calls."""

    def __init__(self, fail_on: str | None = None):
        self.calls = []
        self.fail_on = fail_on

    def _check(self, op):
        self.calls.append(op)
        if op == self.fail_on:
            from devproxy.issuer import CertificateError

            raise CertificateError(f"{op} exploded")

    def create_ca(self, key_path, cert_path, subject, days):
        self._check("create_ca")
        Path(key_path).write_bytes(os.urandom(16))
        Path(cert_path).write_bytes(b"CA:" + subject.common_name.encode())

    def create_csr(self, key_path, csr_path, subject):
        self._check("create_csr")
        Path(key_path).write_bytes(os.urandom(16))
        Path(csr_path).write_bytes(b"CSR:" + subject.common_name.encode())

    def sign_csr(self, csr_path, ca_key_path, ca_cert_path, cert_path, ext_path, days):
        self._check("sign_csr")
        Path(cert_path).write_bytes(b"CERT:" + Path(ext_path).read_bytes())


class FakeTrustStore:
    def __init__(self, fail: bool = False):
        self.installed = []
        self.fail = fail

    def install(self, ca_cert):
        if self.fail:
            raise TrustStoreError("security command not available")
        self.installed.append(Path(ca_cert))


class StaticDiscovery:
    def __init__(self, hostnames=("devbox",), addresses=("192.168.1.20",)):
        self.info = HostInfo(tuple(hostnames), tuple(addresses))
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.info


@pytest.fixture
def issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture
def trust_store() -> FakeTrustStore:
    return FakeTrustStore()


@pytest.fixture
def discovery() -> StaticDiscovery:
    return StaticDiscovery()


@pytest.fixture
def cert_home(tmp_path: Path) -> Path:
    return tmp_path / "symmetric-home"


@pytest.fixture
def cert_paths(cert_home: Path) -> CertPaths:
    return CertPaths(cert_home)


@pytest.fixture(autouse=True)
def _no_env_home(monkeypatch):
    monkeypatch.delenv("SYMMETRIC_HOME", raising=False)
