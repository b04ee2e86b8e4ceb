"""
devproxy.config
~~~~~~~~~~~~~~~
Environment driven settings.  Everything can also be given in a local
``.env`` file, which is loaded before the environment is read.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

ISSUERS = ("cryptography", "openssl")


class ConfigError(Exception):
    pass


@dataclass
class Config:
    backend: str
    paths: Tuple[str, ...]
    subpaths: Tuple[str, ...]
    insecure: bool
    origin_rewrites: Tuple[str, ...]
    additional_domains: Tuple[str, ...]
    additional_ips: Tuple[str, ...]
    home: Optional[str]
    generate_cert: bool
    force_cert: bool
    issuer: str
    cert_server: bool
    cert_server_host: str
    cert_server_port: int
    log_path: Optional[str]
    debug: bool


def _split(raw: str | None) -> Tuple[str, ...]:
    """'a, b,,c' -> ('a', 'b', 'c')"""
    if not raw:
        return ()
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _debug_enabled() -> bool:
    raw = os.getenv("DEBUG", "").lower()
    return raw == "true" or "devproxy" in raw


def load_config() -> Config:
    load_dotenv(override=True)

    issuer = os.getenv("PROXY_CERT_ISSUER", "cryptography").lower()
    if issuer not in ISSUERS:
        raise ConfigError(f"PROXY_CERT_ISSUER must be one of {', '.join(ISSUERS)}, got {issuer!r}")

    raw_port = os.getenv("CERT_SERVER_PORT", "3007")
    try:
        port = int(raw_port)
    except ValueError:
        raise ConfigError(f"CERT_SERVER_PORT is not a number: {raw_port!r}") from None

    return Config(
        backend=os.getenv("PROXY_BACKEND", "").strip(),
        paths=_split(os.getenv("PROXY_PATHS")),
        subpaths=_split(os.getenv("PROXY_SUBPATHS")),
        insecure=_flag("PROXY_INSECURE"),
        origin_rewrites=_split(os.getenv("PROXY_ORIGIN_REWRITES")),
        additional_domains=_split(os.getenv("SSL_ADDITIONAL_DOMAINS")),
        additional_ips=_split(os.getenv("SSL_ADDITIONAL_IPS")),
        home=os.getenv("SYMMETRIC_HOME") or None,
        generate_cert=_flag("GENERATE_CERT"),
        force_cert=_flag("PROXY_FORCE_CERT"),
        issuer=issuer,
        cert_server=_flag("CERT_SERVER"),
        cert_server_host=os.getenv("CERT_SERVER_HOST", "0.0.0.0"),
        cert_server_port=port,
        log_path=os.getenv("PROXY_LOG_PATH") or None,
        debug=_debug_enabled(),
    )
