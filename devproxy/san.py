"""
devproxy.san
~~~~~~~~~~~~
Subject-Alternative-Name bookkeeping for the leaf certificate.

The rendered document doubles as an OpenSSL extension file and as the
fingerprint used to decide whether a cached leaf can be reused::

    subjectAltName = @alt_names

    [ alt_names ]
    DNS.1 = localhost
    IP.1 = 127.0.0.1
"""

from __future__ import annotations

import re
from typing import Iterable, List, Tuple

SEED_DOMAIN = "localhost"
SEED_IP = "127.0.0.1"

_ENTRY = re.compile(r"^\s*(DNS|IP)\.(\d+)\s*=\s*(\S+)\s*$")


class SANSet:
    """Ordered, de-duplicated domains and IPs seeded with localhost."""

    def __init__(
        self,
        domains: Iterable[str] = (),
        ips: Iterable[str] = (),
    ) -> None:
        self._domains: List[str] = [SEED_DOMAIN]
        self._ips: List[str] = [SEED_IP]
        for d in domains:
            self.add_domain(d)
        for ip in ips:
            self.add_ip(ip)

    @property
    def domains(self) -> Tuple[str, ...]:
        return tuple(self._domains)

    @property
    def ips(self) -> Tuple[str, ...]:
        return tuple(self._ips)

    def add_domain(self, domain: str) -> None:
        domain = domain.strip()
        if domain and domain not in self._domains:
            self._domains.append(domain)

    def add_ip(self, ip: str) -> None:
        ip = ip.strip()
        if ip and ip not in self._ips:
            self._ips.append(ip)

    def render(self) -> str:
        lines = ["subjectAltName = @alt_names", "", "[ alt_names ]"]
        lines += [f"DNS.{i} = {d}" for i, d in enumerate(self._domains, 1)]
        lines += [f"IP.{i} = {ip}" for i, ip in enumerate(self._ips, 1)]
        return "\n".join(lines) + "\n"

    @classmethod
    def parse(cls, document: str) -> "SANSet":
        """Read back a document produced by :meth:`render`."""
        domains: List[Tuple[int, str]] = []
        ips: List[Tuple[int, str]] = []
        for ln in document.splitlines():
            m = _ENTRY.match(ln)
            if not m:
                continue
            kind, idx, value = m.groups()
            (domains if kind == "DNS" else ips).append((int(idx), value))
        return cls(
            (v for _, v in sorted(domains)),
            (v for _, v in sorted(ips)),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SANSet):
            return NotImplemented
        return self._domains == other._domains and self._ips == other._ips

    def __repr__(self) -> str:
        return f"SANSet(domains={self._domains!r}, ips={self._ips!r})"
