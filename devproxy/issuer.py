"""
devproxy.issuer
~~~~~~~~~~~~~~~
X.509 issuance primitives behind one small interface.

Three separable steps are needed by the bootstrap pipeline: mint a
self-signed root, create a key plus signing request, and sign a request
with the root.  ``CryptographyIssuer`` does this in-process,
``OpenSSLIssuer`` shells out to the ``openssl`` binary.
"""

from __future__ import annotations

import ipaddress
import os
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .logger import get_logger
from .san import SANSet

log = get_logger("issuer")

KEY_SIZE = 2048
VALIDITY_DAYS = 9999


class CertificateError(Exception):
    """Issuing a key or certificate failed.  Retrying will not help."""


@dataclass(frozen=True)
class DistinguishedName:
    common_name: str
    country: str = "US"
    state: str = "California"
    locality: str = "Berkeley"
    organization: str = "Symmetric"
    organizational_unit: str = "Engineering"

    def _pairs(self):
        return [
            ("C", NameOID.COUNTRY_NAME, self.country),
            ("ST", NameOID.STATE_OR_PROVINCE_NAME, self.state),
            ("L", NameOID.LOCALITY_NAME, self.locality),
            ("O", NameOID.ORGANIZATION_NAME, self.organization),
            ("OU", NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit),
            ("CN", NameOID.COMMON_NAME, self.common_name),
        ]

    def openssl(self) -> str:
        """``/C=US/.../CN=name`` as taken by ``openssl req -subj``."""
        return "".join(f"/{short}={value}" for short, _, value in self._pairs() if value)

    def x509_name(self) -> x509.Name:
        return x509.Name(
            [x509.NameAttribute(oid, value) for _, oid, value in self._pairs() if value]
        )


CA_SUBJECT = DistinguishedName("Symmetric Proxy CA")
LEAF_SUBJECT = DistinguishedName("Symmetric Proxy")


class X509Issuer(Protocol):
    def create_ca(
        self, key_path: Path, cert_path: Path, subject: DistinguishedName, days: int
    ) -> None:
        """Write a new root key and a self-signed ``CA:true`` certificate."""

    def create_csr(self, key_path: Path, csr_path: Path, subject: DistinguishedName) -> None:
        """Write a new private key and a signing request for it."""

    def sign_csr(
        self,
        csr_path: Path,
        ca_key_path: Path,
        ca_cert_path: Path,
        cert_path: Path,
        ext_path: Path,
        days: int,
    ) -> None:
        """Sign *csr_path* with the root, applying the SANs in *ext_path*."""


# ---------------------------------------------------------------------- #
# helpers
# ---------------------------------------------------------------------- #


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, 0o600)


def _read(path: Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise CertificateError(f"Cannot read {path}: {e}") from e


def _general_names(sans: SANSet) -> List[x509.GeneralName]:
    names: List[x509.GeneralName] = [x509.DNSName(d) for d in sans.domains]
    for ip in sans.ips:
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(ip)))
        except ValueError as e:
            raise CertificateError(f"Invalid IP address in SAN list: {ip!r}") from e
    return names


# ---------------------------------------------------------------------- #
# cryptography
# ---------------------------------------------------------------------- #


class CryptographyIssuer:
    """Issues keys and certificates with the ``cryptography`` package."""

    def __init__(self, key_size: int = KEY_SIZE) -> None:
        self.key_size = key_size

    def _new_key(self, key_path: Path) -> rsa.RSAPrivateKey:
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        try:
            _write_private(
                key_path,
                key.private_bytes(
                    serialization.Encoding.PEM,
                    serialization.PrivateFormat.PKCS8,
                    serialization.NoEncryption(),
                ),
            )
        except OSError as e:
            raise CertificateError(f"Cannot write key {key_path}: {e}") from e
        return key

    @staticmethod
    def _write_cert(cert_path: Path, cert: x509.Certificate) -> None:
        try:
            Path(cert_path).write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        except OSError as e:
            raise CertificateError(f"Cannot write certificate {cert_path}: {e}") from e

    def create_ca(
        self, key_path: Path, cert_path: Path, subject: DistinguishedName, days: int
    ) -> None:
        key = self._new_key(key_path)
        name = subject.x509_name()
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=days))
            # Android only lists roots with CA:true under trusted credentials
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .sign(private_key=key, algorithm=hashes.SHA256())
        )
        self._write_cert(cert_path, cert)

    def create_csr(self, key_path: Path, csr_path: Path, subject: DistinguishedName) -> None:
        key = self._new_key(key_path)
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(subject.x509_name())
            .sign(key, hashes.SHA256())
        )
        try:
            Path(csr_path).write_bytes(csr.public_bytes(serialization.Encoding.PEM))
        except OSError as e:
            raise CertificateError(f"Cannot write signing request {csr_path}: {e}") from e

    def sign_csr(
        self,
        csr_path: Path,
        ca_key_path: Path,
        ca_cert_path: Path,
        cert_path: Path,
        ext_path: Path,
        days: int,
    ) -> None:
        try:
            csr = x509.load_pem_x509_csr(_read(csr_path))
            ca_cert = x509.load_pem_x509_certificate(_read(ca_cert_path))
            ca_key = serialization.load_pem_private_key(_read(ca_key_path), password=None)
        except ValueError as e:
            raise CertificateError(f"Unreadable key material: {e}") from e

        sans = SANSet.parse(_read(ext_path).decode("utf-8"))
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=days))
            .add_extension(x509.SubjectAlternativeName(_general_names(sans)), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
                critical=False,
            )
            .sign(private_key=ca_key, algorithm=hashes.SHA256())
        )
        self._write_cert(cert_path, cert)


# ---------------------------------------------------------------------- #
# openssl CLI
# ---------------------------------------------------------------------- #

_CA_CONFIG = """\
[ req ]
req_extensions=v3_ca
distinguished_name=req_distinguished_name

[ req_distinguished_name ]

[ v3_ca ]
basicConstraints=critical,CA:true
keyUsage=critical,digitalSignature,keyCertSign,cRLSign
subjectKeyIdentifier=hash
"""


class OpenSSLIssuer:
    """Issues keys and certificates by running the ``openssl`` binary."""

    def __init__(self, binary: str = "openssl", key_size: int = KEY_SIZE) -> None:
        self.binary = binary
        self.key_size = key_size

    def _run(self, *args: str) -> None:
        cmd = [self.binary, *args]
        log.debug("running %s", " ".join(cmd))
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True)
        except FileNotFoundError as e:
            raise CertificateError(f"{self.binary} not found on PATH") from e
        except subprocess.CalledProcessError as e:
            raise CertificateError(
                f"{' '.join(cmd[:3])} failed ({e.returncode}): {e.stderr.strip()}"
            ) from e

    def create_ca(
        self, key_path: Path, cert_path: Path, subject: DistinguishedName, days: int
    ) -> None:
        with tempfile.NamedTemporaryFile("w", suffix=".cnf", delete=False) as cfg:
            cfg.write(_CA_CONFIG)
        try:
            self._run(
                "req", "-x509", "-nodes",
                "-days", str(days),
                "-sha256",
                "-newkey", f"rsa:{self.key_size}",
                "-keyout", str(key_path),
                "-out", str(cert_path),
                "-config", cfg.name,
                "-extensions", "v3_ca",
                "-subj", subject.openssl(),
            )
        finally:
            os.unlink(cfg.name)
        os.chmod(key_path, 0o600)

    def create_csr(self, key_path: Path, csr_path: Path, subject: DistinguishedName) -> None:
        self._run(
            "req", "-nodes",
            "-newkey", f"rsa:{self.key_size}",
            "-keyout", str(key_path),
            "-out", str(csr_path),
            "-subj", subject.openssl(),
        )
        os.chmod(key_path, 0o600)

    def sign_csr(
        self,
        csr_path: Path,
        ca_key_path: Path,
        ca_cert_path: Path,
        cert_path: Path,
        ext_path: Path,
        days: int,
    ) -> None:
        self._run(
            "x509", "-req",
            "-days", str(days),
            "-sha256",
            "-CA", str(ca_cert_path),
            "-CAkey", str(ca_key_path),
            "-CAcreateserial",
            "-in", str(csr_path),
            "-out", str(cert_path),
            "-extfile", str(ext_path),
        )


def make_issuer(name: str = "cryptography") -> X509Issuer:
    if name == "cryptography":
        return CryptographyIssuer()
    if name == "openssl":
        return OpenSSLIssuer()
    raise ValueError(f"Unknown certificate issuer: {name!r}")
