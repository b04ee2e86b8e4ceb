"""
devproxy.discovery
~~~~~~~~~~~~~~~~~~
Best-effort lookup of the names and addresses this machine is reachable
under.  Every probe stands alone: a missing tool, a timeout or garbage
output just means that probe contributes nothing.
"""

from __future__ import annotations

import ipaddress
import socket
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .logger import get_logger

log = get_logger("discovery")

PROBE_TIMEOUT = 5  # seconds

PUBLIC_IP_CMD = ["dig", "+short", "myip.opendns.com", "@resolver1.opendns.com"]


@dataclass(frozen=True)
class HostInfo:
    hostnames: Tuple[str, ...] = ()
    addresses: Tuple[str, ...] = ()


def _run(cmd: Sequence[str]) -> str:
    out = subprocess.run(
        list(cmd),
        capture_output=True,
        text=True,
        timeout=PROBE_TIMEOUT,
        check=True,
    )
    return out.stdout.strip()


def _clean_ip(token: str) -> Optional[str]:
    """Canonical text of *token* if it is a usable non-loopback address."""
    token = token.strip().split("%", 1)[0]  # fe80::1%en0
    if not token:
        return None
    try:
        ip = ipaddress.ip_address(token)
    except ValueError:
        return None
    if ip.is_loopback or ip.is_unspecified:
        return None
    return str(ip)


def _clean_ips(tokens: Sequence[str]) -> List[str]:
    return [ip for ip in map(_clean_ip, tokens) if ip]


def local_hostname() -> List[str]:
    try:
        name = socket.gethostname().strip()
    except OSError as exc:
        log.debug("hostname lookup failed: %s", exc)
        return []
    return [name] if name else []


def _ifconfig_addresses(output: str) -> List[str]:
    tokens = []
    for ln in output.splitlines():
        fields = ln.split()
        if len(fields) >= 2 and fields[0] in ("inet", "inet6"):
            tokens.append(fields[1])
    return tokens


def lan_addresses() -> List[str]:
    if sys.platform == "darwin":
        try:
            return _clean_ips(_ifconfig_addresses(_run(["ifconfig"])))
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("ifconfig probe failed: %s", exc)
            return []

    for cmd in (["hostname", "--all-ip-addresses"], ["hostname", "-I"]):
        try:
            return _clean_ips(_run(cmd).split())
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("%s probe failed: %s", " ".join(cmd), exc)
    return []


def public_ip() -> List[str]:
    try:
        out = _run(PUBLIC_IP_CMD)
    except (OSError, subprocess.SubprocessError) as exc:
        log.debug("public ip probe failed: %s", exc)
        return []
    # dig prints nothing (or a comment line) when the resolver is unreachable
    return _clean_ips(out.splitlines()[:1])


def discover_host() -> HostInfo:
    addresses: List[str] = []
    for ip in lan_addresses() + public_ip():
        if ip not in addresses:
            addresses.append(ip)
    return HostInfo(hostnames=tuple(local_hostname()), addresses=tuple(addresses))
