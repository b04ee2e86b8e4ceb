"""
devproxy.trust
~~~~~~~~~~~~~~
Registering the local root CA with the operating system trust store.
Always best-effort: a failure here means the operator installs the
certificate by hand.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Protocol

from .logger import get_logger

log = get_logger("trust")

LOGIN_KEYCHAIN = Path("~/Library/Keychains/login.keychain")


class TrustStoreError(Exception):
    pass


def manual_install_note(ca_cert: str | Path) -> str:
    return (
        f"NOTE: Before proceeding please be sure to add {ca_cert} "
        "as a trusted root cert to your system."
    )


class TrustStoreInstaller(Protocol):
    def install(self, ca_cert: Path) -> None:
        """Trust *ca_cert* as a root.  Raises TrustStoreError on failure."""


class NoopTrustStore:
    def install(self, ca_cert: Path) -> None:
        log.info("Skipping - no trust store integration for %s.", sys.platform)
        log.info(manual_install_note(ca_cert))


class KeychainTrustStore:
    """macOS login keychain through ``security add-trusted-cert``."""

    def __init__(self, keychain: str | Path = LOGIN_KEYCHAIN) -> None:
        self.keychain = Path(keychain).expanduser()

    def install(self, ca_cert: Path) -> None:
        log.info("Adding to keychain...")
        cmd = ["security", "add-trusted-cert", "-k", str(self.keychain), str(ca_cert)]
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise TrustStoreError(
                f"security add-trusted-cert failed ({e.returncode}): {(e.stderr or '').strip()}"
            ) from e
        except OSError as e:
            raise TrustStoreError(f"security command not available: {e}") from e


def default_trust_store() -> TrustStoreInstaller:
    if sys.platform == "darwin":
        return KeychainTrustStore()
    return NoopTrustStore()
