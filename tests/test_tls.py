"""Tests for the certificate bootstrap pipeline."""

from pathlib import Path

import pytest

from devproxy.issuer import CertificateError
from devproxy.san import SANSet
from devproxy.tls import (
    CertificateBootstrap,
    CertOptions,
    CertPaths,
    build_san_set,
    create_self_signed_cert,
    resolve_home,
)

from conftest import FakeIssuer, FakeTrustStore, StaticDiscovery


def _bootstrap(paths, issuer, trust_store, discovery):
    return CertificateBootstrap(paths, issuer, trust_store, discover=discovery)


# ============================================================================
# Storage root
# ============================================================================


class TestResolveHome:
    def test_explicit_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SYMMETRIC_HOME", str(tmp_path / "env"))
        assert resolve_home(tmp_path / "explicit") == tmp_path / "explicit"

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SYMMETRIC_HOME", str(tmp_path / "env"))
        assert resolve_home() == tmp_path / "env"

    def test_default_under_user_home(self):
        assert resolve_home() == Path.home() / ".symmetric"

    def test_layout(self, tmp_path):
        p = CertPaths(tmp_path)
        assert [f.name for f in (p.ca_key, p.ca_cert, p.key, p.csr, p.cert, p.ext)] == [
            "symmetric_ca.key",
            "symmetric_ca.crt",
            "symmetric.key",
            "symmetric.csr",
            "symmetric.crt",
            "symmetric.ext",
        ]


# ============================================================================
# SAN set
# ============================================================================


def test_san_set_order_is_seed_additions_then_discovery(discovery):
    sans = build_san_set(["app.local", "localhost"], ["10.0.0.5"], discovery())
    assert sans.domains == ("localhost", "app.local", "devbox")
    assert sans.ips == ("127.0.0.1", "10.0.0.5", "192.168.1.20")


# ============================================================================
# CA lifecycle
# ============================================================================


class TestCertificateAuthority:
    def test_first_run_creates_and_trusts_ca(self, cert_paths, issuer, trust_store, discovery):
        files = _bootstrap(cert_paths, issuer, trust_store, discovery).run()

        assert issuer.calls == ["create_ca", "create_csr", "sign_csr"]
        assert trust_store.installed == [cert_paths.ca_cert]
        assert files.ca_cert.read_bytes() == b"CA:Symmetric Proxy CA"
        assert files.key.exists() and files.cert.exists()

    def test_existing_ca_is_reused(self, cert_paths, issuer, trust_store, discovery):
        _bootstrap(cert_paths, issuer, trust_store, discovery).run()
        ca_key = cert_paths.ca_key.read_bytes()

        second = FakeIssuer()
        _bootstrap(cert_paths, second, trust_store, discovery).run()

        assert "create_ca" not in second.calls
        assert cert_paths.ca_key.read_bytes() == ca_key
        assert len(trust_store.installed) == 1

    @pytest.mark.parametrize("missing", ["ca_key", "ca_cert"])
    def test_partial_ca_is_regenerated(self, cert_paths, issuer, trust_store, discovery, missing):
        _bootstrap(cert_paths, issuer, trust_store, discovery).run()
        getattr(cert_paths, missing).unlink()

        second = FakeIssuer()
        _bootstrap(cert_paths, second, trust_store, discovery).run()

        assert second.calls == ["create_ca", "create_csr", "sign_csr"]
        assert cert_paths.ca_key.exists() and cert_paths.ca_cert.exists()

    def test_trust_failure_is_not_fatal(self, cert_paths, issuer, discovery):
        files = _bootstrap(cert_paths, issuer, FakeTrustStore(fail=True), discovery).run()
        assert files.ca_cert.exists()
        assert files.cert.exists()

    def test_issuance_failure_propagates(self, cert_paths, trust_store, discovery):
        with pytest.raises(CertificateError, match="create_ca exploded"):
            _bootstrap(cert_paths, FakeIssuer(fail_on="create_ca"), trust_store, discovery).run()
        assert trust_store.installed == []

    def test_unwritable_root_is_fatal(self, tmp_path, issuer, trust_store, discovery):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        with pytest.raises(CertificateError):
            _bootstrap(CertPaths(blocker / "home"), issuer, trust_store, discovery).run()


# ============================================================================
# Leaf lifecycle
# ============================================================================


class TestLeafCertificate:
    def test_unchanged_sans_reuse_leaf(self, cert_paths, issuer, trust_store, discovery):
        _bootstrap(cert_paths, issuer, trust_store, discovery).run(["app.local"])
        key = cert_paths.key.read_bytes()
        cert = cert_paths.cert.read_bytes()

        second = FakeIssuer()
        _bootstrap(cert_paths, second, trust_store, StaticDiscovery()).run(["app.local"])

        assert second.calls == []
        assert cert_paths.key.read_bytes() == key
        assert cert_paths.cert.read_bytes() == cert

    def test_changed_sans_regenerate_leaf(self, cert_paths, issuer, trust_store, discovery):
        _bootstrap(cert_paths, issuer, trust_store, discovery).run()
        key = cert_paths.key.read_bytes()

        moved = StaticDiscovery(addresses=("192.168.1.99",))
        second = FakeIssuer()
        _bootstrap(cert_paths, second, trust_store, moved).run()

        expected = SANSet(["devbox"], ["192.168.1.99"]).render()
        assert second.calls == ["create_csr", "sign_csr"]
        assert cert_paths.ext.read_text() == expected
        assert cert_paths.key.read_bytes() != key
        assert cert_paths.cert.read_bytes() == b"CERT:" + expected.encode()

    def test_added_domain_regenerates_leaf(self, cert_paths, issuer, trust_store, discovery):
        _bootstrap(cert_paths, issuer, trust_store, discovery).run()
        second = FakeIssuer()
        _bootstrap(cert_paths, second, trust_store, discovery).run(["app.local"])
        assert second.calls == ["create_csr", "sign_csr"]
        assert "DNS.2 = app.local" in cert_paths.ext.read_text()

    @pytest.mark.parametrize("missing", ["key", "cert", "ext"])
    def test_missing_leaf_file_regenerates(self, cert_paths, issuer, trust_store, discovery, missing):
        _bootstrap(cert_paths, issuer, trust_store, discovery).run()
        getattr(cert_paths, missing).unlink()

        second = FakeIssuer()
        _bootstrap(cert_paths, second, trust_store, discovery).run()
        assert second.calls == ["create_csr", "sign_csr"]

    def test_undecodable_ext_regenerates(self, cert_paths, issuer, trust_store, discovery):
        _bootstrap(cert_paths, issuer, trust_store, discovery).run()
        cert_paths.ext.write_bytes(b"\xff\xfe garbage")

        second = FakeIssuer()
        _bootstrap(cert_paths, second, trust_store, discovery).run()

        assert second.calls == ["create_csr", "sign_csr"]
        assert cert_paths.ext.read_text() == SANSet(["devbox"], ["192.168.1.20"]).render()

    def test_force_regenerates(self, cert_paths, issuer, trust_store, discovery):
        _bootstrap(cert_paths, issuer, trust_store, discovery).run()
        second = FakeIssuer()
        _bootstrap(cert_paths, second, trust_store, discovery).run(force=True)
        assert second.calls == ["create_csr", "sign_csr"]

    def test_signing_failure_propagates(self, cert_paths, trust_store, discovery):
        with pytest.raises(CertificateError):
            _bootstrap(cert_paths, FakeIssuer(fail_on="sign_csr"), trust_store, discovery).run()


def test_create_self_signed_cert_uses_options(cert_home, issuer, trust_store, discovery):
    files = create_self_signed_cert(
        CertOptions(home=str(cert_home), name="acme", additional_ips=("10.1.1.1",)),
        issuer=issuer,
        trust_store=trust_store,
        discover=discovery,
    )

    assert files.cert == cert_home / "acme.crt"
    assert files.ca_cert == cert_home / "acme_ca.crt"
    assert "IP.2 = 10.1.1.1" in (cert_home / "acme.ext").read_text()
    material = files.read()
    assert material.key == files.key.read_bytes()
    assert material.cert.startswith(b"CERT:")
