"""
devproxy.routing
~~~~~~~~~~~~~~~~
Decides which requests go to the backend.  Backend-owned routes and
anything that is not a plain read are proxied; the rest (local assets)
is served by the dev server directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple
from urllib.parse import urlsplit

STANDARD_PATHS: Tuple[str, ...] = (
    "api",
    "login",
    "logout",
    "auth",
    "deauth",
    "setup",
    "callback",
    "static",
    "__debug__",
)
STANDARD_SUBPATHS: Tuple[str, ...] = ()

SAFE_METHODS = frozenset({"GET", "HEAD"})


def normalize_paths(tokens: Iterable[str], standard: Iterable[str] = ()) -> Tuple[str, ...]:
    """Strip slashes, drop blanks and merge in *standard*, keeping order."""
    out = []
    for token in list(tokens) + list(standard):
        token = token.replace("/", "")
        if token and token not in out:
            out.append(token)
    return tuple(out)


@dataclass(frozen=True)
class PathSet:
    paths: Tuple[str, ...]
    subpaths: Tuple[str, ...]

    @classmethod
    def build(
        cls,
        paths: Iterable[str] = (),
        subpaths: Iterable[str] = (),
        standard_paths: Iterable[str] = STANDARD_PATHS,
        standard_subpaths: Iterable[str] = STANDARD_SUBPATHS,
    ) -> "PathSet":
        return cls(
            paths=normalize_paths(paths, standard_paths),
            subpaths=normalize_paths(subpaths, standard_subpaths),
        )

    def matches(self, url: str) -> bool:
        parts = urlsplit(url).path.split("/")
        first = parts[1] if len(parts) > 1 else None
        second = parts[2] if len(parts) > 2 else None
        return first in self.paths or second in self.subpaths


class BypassRule:
    """Per-request routing predicate handed to the proxy engine."""

    def __init__(self, routes: PathSet) -> None:
        self.routes = routes

    def should_proxy(self, method: str, url: str) -> bool:
        if method.upper() not in SAFE_METHODS:
            return True
        return self.routes.matches(url)

    def __call__(self, req) -> Optional[str]:
        """None forwards *req* to the backend; the url serves it locally."""
        if self.should_proxy(req.method, req.url):
            return None
        return req.url
