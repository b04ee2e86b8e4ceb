"""
devproxy.tls
~~~~~~~~~~~~
Local root CA plus a leaf certificate covering every name and address
this machine answers to.

The root is created once per storage directory and reused forever.  The
leaf is re-issued only when the set of alternative names changes, so an
unchanged host never triggers a new trust prompt.

To inspect what was generated::

    openssl x509 -text -noout -in ~/.symmetric/symmetric.crt
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from .discovery import HostInfo, discover_host
from .issuer import (
    CA_SUBJECT,
    LEAF_SUBJECT,
    VALIDITY_DAYS,
    CertificateError,
    DistinguishedName,
    X509Issuer,
    make_issuer,
)
from .logger import get_logger
from .san import SANSet
from .trust import TrustStoreError, TrustStoreInstaller, default_trust_store, manual_install_note

log = get_logger("tls")

HOME_ENV = "SYMMETRIC_HOME"
DEFAULT_NAME = "symmetric"


@dataclass(frozen=True)
class TLSMaterial:
    key: bytes
    cert: bytes


@dataclass(frozen=True)
class CertFiles:
    key: Path
    cert: Path
    ca_key: Path
    ca_cert: Path

    def read(self) -> TLSMaterial:
        try:
            return TLSMaterial(key=self.key.read_bytes(), cert=self.cert.read_bytes())
        except OSError as e:
            raise CertificateError(f"Cannot read certificate material: {e}") from e


@dataclass(frozen=True)
class CertPaths:
    root: Path
    name: str = DEFAULT_NAME

    def _file(self, suffix: str) -> Path:
        return self.root / f"{self.name}{suffix}"

    @property
    def ca_key(self) -> Path:
        return self._file("_ca.key")

    @property
    def ca_cert(self) -> Path:
        return self._file("_ca.crt")

    @property
    def key(self) -> Path:
        return self._file(".key")

    @property
    def csr(self) -> Path:
        return self._file(".csr")

    @property
    def cert(self) -> Path:
        return self._file(".crt")

    @property
    def ext(self) -> Path:
        return self._file(".ext")

    def files(self) -> CertFiles:
        return CertFiles(key=self.key, cert=self.cert, ca_key=self.ca_key, ca_cert=self.ca_cert)


@dataclass(frozen=True)
class CertOptions:
    """Caller-side knobs for :func:`create_self_signed_cert`."""

    additional_domains: tuple = ()
    additional_ips: tuple = ()
    home: Optional[str] = None
    name: str = DEFAULT_NAME
    force: bool = False
    issuer: str = "cryptography"
    ca_subject: DistinguishedName = field(default=CA_SUBJECT)
    subject: DistinguishedName = field(default=LEAF_SUBJECT)
    days: int = VALIDITY_DAYS


def resolve_home(home: str | Path | None = None) -> Path:
    if home:
        return Path(home).expanduser()
    env = os.getenv(HOME_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / f".{DEFAULT_NAME}"


def build_san_set(
    additional_domains: Iterable[str] = (),
    additional_ips: Iterable[str] = (),
    host: HostInfo | None = None,
) -> SANSet:
    sans = SANSet(additional_domains, additional_ips)
    if host is not None:
        for name in host.hostnames:
            sans.add_domain(name)
        for ip in host.addresses:
            sans.add_ip(ip)
    return sans


class CertificateBootstrap:
    """Creates (once) the root and issues (when needed) the leaf."""

    def __init__(
        self,
        paths: CertPaths,
        issuer: X509Issuer,
        trust_store: TrustStoreInstaller,
        discover: Callable[[], HostInfo] = discover_host,
        ca_subject: DistinguishedName = CA_SUBJECT,
        subject: DistinguishedName = LEAF_SUBJECT,
        days: int = VALIDITY_DAYS,
    ) -> None:
        self.paths = paths
        self.issuer = issuer
        self.trust_store = trust_store
        self.discover = discover
        self.ca_subject = ca_subject
        self.subject = subject
        self.days = days

    # ------------------------------------------------------------------ #
    # public
    # ------------------------------------------------------------------ #

    def run(
        self,
        additional_domains: Iterable[str] = (),
        additional_ips: Iterable[str] = (),
        force: bool = False,
    ) -> CertFiles:
        self._ensure_root()
        # a leaf signed by a previous root is useless once that root is gone
        new_root = self.ensure_ca()
        sans = build_san_set(additional_domains, additional_ips, self.discover())
        self.ensure_leaf(sans, force=force or new_root)
        return self.paths.files()

    def ca_present(self) -> bool:
        return self.paths.ca_key.exists() and self.paths.ca_cert.exists()

    def ensure_ca(self) -> bool:
        """Create and trust the root if either of its files is missing."""
        if self.ca_present():
            return False

        log.info("Generating self-signed root cert...")
        self.issuer.create_ca(self.paths.ca_key, self.paths.ca_cert, self.ca_subject, self.days)

        try:
            self.trust_store.install(self.paths.ca_cert)
        except TrustStoreError as e:
            log.warning("Skipping - %s.", e)
            log.warning(manual_install_note(self.paths.ca_cert))
        return True

    def leaf_is_current(self, document: str) -> bool:
        p = self.paths
        if not (p.ext.exists() and p.key.exists() and p.cert.exists()):
            return False
        try:
            return p.ext.read_bytes() == document.encode("utf-8")
        except OSError:
            return False

    def ensure_leaf(self, sans: SANSet, force: bool = False) -> bool:
        """Issue a new leaf unless the cached one covers exactly *sans*."""
        document = sans.render()
        if not force and self.leaf_is_current(document):
            log.info("Using existing SSL cert and key...")
            return False

        log.info("Creating new SSL cert and key...")
        p = self.paths
        try:
            p.ext.write_bytes(document.encode("utf-8"))
        except OSError as e:
            raise CertificateError(f"Cannot write {p.ext}: {e}") from e
        self.issuer.create_csr(p.key, p.csr, self.subject)
        self.issuer.sign_csr(p.csr, p.ca_key, p.ca_cert, p.cert, p.ext, self.days)
        return True

    # ------------------------------------------------------------------ #
    # private
    # ------------------------------------------------------------------ #

    def _ensure_root(self) -> None:
        try:
            self.paths.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CertificateError(f"Cannot create {self.paths.root}: {e}") from e


def create_self_signed_cert(
    options: CertOptions | None = None,
    *,
    issuer: X509Issuer | None = None,
    trust_store: TrustStoreInstaller | None = None,
    discover: Callable[[], HostInfo] = discover_host,
) -> CertFiles:
    """Make sure a trusted root and a matching leaf exist under the storage root.

    Returns the paths of the leaf key and certificate and of the root key
    and certificate.  Raises :class:`CertificateError` if issuing fails.
    """
    options = options or CertOptions()
    bootstrap = CertificateBootstrap(
        CertPaths(resolve_home(options.home), options.name),
        issuer or make_issuer(options.issuer),
        trust_store or default_trust_store(),
        discover=discover,
        ca_subject=options.ca_subject,
        subject=options.subject,
        days=options.days,
    )
    return bootstrap.run(options.additional_domains, options.additional_ips, force=options.force)
