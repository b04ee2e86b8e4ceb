"""
devproxy.stages
~~~~~~~~~~~~~~~
Request and response transforms run by the proxy hooks.

Each stage is a small callable that mutates the message it is given and
then hands over to the next stage.  Stages share nothing but the frozen
settings they were built with, so one chain can serve any number of
concurrent requests.
"""

from __future__ import annotations

import gzip
import re
import zlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from functools import reduce
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from .logger import get_logger

log = get_logger("stages")

HeaderValue = Union[str, List[str]]

EPOCH_EXPIRY = "Thu, 01 Jan 1970 00:00:01 GMT"
DECODABLE_ENCODINGS = ("gzip", "deflate")


class ProxyError(Exception):
    def __init__(self, status: int, msg: str):
        self.status = status
        self.msg = msg
        super().__init__(f"{status} {msg}")


class BodyRewriteError(ProxyError):
    def __init__(self, msg: str):
        super().__init__(502, msg)


@dataclass
class ProxyRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    client_ip: str = ""
    scheme: str = "http"

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def forward_copy(self) -> "ProxyRequest":
        """Outbound copy the hooks may mutate without touching the original."""
        return replace(self, headers=dict(self.headers))


@dataclass
class ProxyResponse:
    status: int
    headers: Dict[str, HeaderValue] = field(default_factory=dict)
    body: Iterable[bytes] = ()

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def set_cookies(self) -> List[str]:
        """``set-cookie`` as a list, stored back so stages can append to it."""
        raw = self.headers.get("set-cookie") or []
        cookies = [raw] if isinstance(raw, str) else list(raw)
        self.headers["set-cookie"] = cookies
        return cookies


RequestHandler = Callable[[ProxyRequest, ProxyRequest], None]
ResponseHandler = Callable[[ProxyResponse, ProxyRequest], None]


def _end_request(proxy_req: ProxyRequest, req: ProxyRequest) -> None:
    return None


def _end_response(res: ProxyResponse, req: ProxyRequest) -> None:
    return None


def chain_requests(stages: Sequence) -> RequestHandler:
    """First stage runs first; each one receives the rest as ``call_next``."""
    def wrap(call_next, stage):
        return lambda proxy_req, req: stage(proxy_req, req, call_next)
    return reduce(wrap, reversed(stages), _end_request)


def chain_responses(stages: Sequence) -> ResponseHandler:
    def wrap(call_next, stage):
        return lambda res, req: stage(res, req, call_next)
    return reduce(wrap, reversed(stages), _end_response)


# ---------------------------------------------------------------------- #
# cookies
# ---------------------------------------------------------------------- #


def cookie_pairs(header: str) -> List[Tuple[str, str]]:
    pairs = []
    for part in header.split(";"):
        name, sep, value = part.strip().partition("=")
        if name:
            pairs.append((name.strip(), value.strip() if sep else ""))
    return pairs


def has_cookie(header: Optional[str], name: str, value: str) -> bool:
    return any(n == name and v == value for n, v in cookie_pairs(header or ""))


def drop_cookie(header: str, name: str) -> str:
    kept = [p.strip() for p in header.split(";") if p.strip()]
    return "; ".join(p for p in kept if p.partition("=")[0].strip() != name)


# ---------------------------------------------------------------------- #
# request stages
# ---------------------------------------------------------------------- #


class HeaderOverrides:
    """Static headers plus ``Host`` pointed at the backend."""

    def __init__(self, headers: Dict[str, str], backend_host: Optional[str] = None) -> None:
        self.headers = {k.lower(): v for k, v in headers.items()}
        self.backend_host = backend_host

    def __call__(self, proxy_req, req, call_next):
        proxy_req.headers.update(self.headers)
        if self.backend_host:
            proxy_req.headers["host"] = self.backend_host
        call_next(proxy_req, req)


def _append(headers: Dict[str, str], name: str, value: str) -> None:
    prev = headers.get(name)
    headers[name] = f"{prev},{value}" if prev else value


def _port(host: str, scheme: str) -> str:
    hostpart = host.rsplit("]", 1)[-1]  # [::1]:8080
    if ":" in hostpart:
        return hostpart.rsplit(":", 1)[1]
    return "443" if scheme == "https" else "80"


class ForwardedHeaders:
    """X-Forwarded-* so the backend can rebuild the client facing URL."""

    def __call__(self, proxy_req, req, call_next):
        host = req.headers.get("host", "")
        port = _port(host, req.scheme)

        if req.client_ip:
            _append(proxy_req.headers, "x-forwarded-for", req.client_ip)
        _append(proxy_req.headers, "x-forwarded-port", port)
        _append(proxy_req.headers, "x-forwarded-proto", req.scheme)
        if host:
            _append(proxy_req.headers, "x-forwarded-host", host)
        call_next(proxy_req, req)


class SessionStrip:
    """Drop the session cookie when it was issued by another backend."""

    def __init__(self, backend: str, marker_cookie: str, session_cookie: str) -> None:
        self.backend = backend
        self.marker_cookie = marker_cookie
        self.session_cookie = session_cookie

    def __call__(self, proxy_req, req, call_next):
        cookies = proxy_req.headers.get("cookie")
        if cookies and not has_cookie(cookies, self.marker_cookie, self.backend):
            stripped = drop_cookie(cookies, self.session_cookie)
            if stripped:
                proxy_req.headers["cookie"] = stripped
            else:
                del proxy_req.headers["cookie"]
        call_next(proxy_req, req)


# ---------------------------------------------------------------------- #
# response stages
# ---------------------------------------------------------------------- #

_TRAILING_SECURE = re.compile(r"(?<=;)\s*secure\s*$", re.IGNORECASE)


class InsecureCookies:
    """Remove a trailing ``Secure`` so cookies survive plain http."""

    def __call__(self, res, req, call_next):
        if res.headers.get("set-cookie"):
            cookies = res.set_cookies()
            cookies[:] = [_TRAILING_SECURE.sub("", c) for c in cookies]
        call_next(res, req)


class SessionMarker:
    """Tag the client with the backend that issued its session.

    When the client arrives without a matching marker, the marker is set
    and any old session cookie is expired unless the backend just issued
    a fresh one.
    """

    def __init__(
        self,
        backend: str,
        marker_cookie: str,
        session_cookie: str,
        max_age_days: int = 365,
    ) -> None:
        self.backend = backend
        self.marker_cookie = marker_cookie
        self.session_cookie = session_cookie
        self.max_age = timedelta(days=max_age_days)
        self._session_set = re.compile(rf"^\s*{re.escape(session_cookie)}=[^;\s]+")

    def __call__(self, res, req, call_next):
        if not has_cookie(req.headers.get("cookie"), self.marker_cookie, self.backend):
            cookies = res.set_cookies()
            issued_session = any(self._session_set.match(c) for c in cookies)
            expires = format_datetime(datetime.now(timezone.utc) + self.max_age, usegmt=True)
            cookies.append(f"{self.marker_cookie}={self.backend}; expires={expires}; path=/")
            if not issued_session:
                cookies.append(f"{self.session_cookie}=; expires={EPOCH_EXPIRY}; path=/")
        call_next(res, req)


class RedirectRewrite:
    """Point backend redirects at the proxy and force the scheme."""

    def __init__(
        self,
        protocol: Optional[str],
        backend_host: Optional[str] = None,
        auto_rewrite: bool = True,
    ) -> None:
        self.protocol = protocol
        self.backend_host = backend_host
        self.auto_rewrite = auto_rewrite

    @staticmethod
    def is_redirect(status: int) -> bool:
        return status == 201 or 300 <= status < 400

    def rewrite(self, location: str, client_host: Optional[str]) -> str:
        u = urlsplit(location)
        if u.scheme not in ("http", "https") or not u.netloc:
            return location
        if self.auto_rewrite and client_host and u.netloc == self.backend_host:
            u = u._replace(netloc=client_host)
        if self.protocol:
            u = u._replace(scheme=self.protocol)
        return urlunsplit(u)

    def __call__(self, res, req, call_next):
        location = res.headers.get("location")
        if location and self.is_redirect(res.status):
            res.headers["location"] = self.rewrite(location, req.headers.get("host"))
        call_next(res, req)


class OriginRewrite:
    """Buffer HTML bodies and strip absolute backend origins from them."""

    def __init__(self, origins: Iterable[str]) -> None:
        self.origins = tuple(o for o in origins if o)
        self._pattern = re.compile("|".join(map(re.escape, self.origins)), re.IGNORECASE)

    @staticmethod
    def is_html(res: ProxyResponse) -> bool:
        ctype = res.headers.get("content-type")
        return isinstance(ctype, str) and "text/html" in ctype.lower()

    def decode_body(self, body: bytes, encoding: str) -> bytes:
        try:
            if encoding == "gzip":
                return gzip.decompress(body)
            try:
                return zlib.decompress(body)
            except zlib.error:
                # some servers send raw deflate without the zlib wrapper
                return zlib.decompress(body, -zlib.MAX_WBITS)
        except (OSError, EOFError, zlib.error) as e:
            raise BodyRewriteError(f"Cannot decompress upstream body: {e}") from e

    def rewrite_body(self, body: bytes, encoding: Optional[str] = None) -> bytes:
        if encoding:
            body = self.decode_body(body, encoding)
        text = body.decode("utf-8", errors="surrogateescape")
        return self._pattern.sub("", text).encode("utf-8", errors="surrogateescape")

    def __call__(self, res, req, call_next):
        if self.origins and self.is_html(res):
            encoding = res.headers.get("content-encoding") or "identity"
            if isinstance(encoding, list):
                encoding = ", ".join(encoding)
            encoding = encoding.strip().lower()
            # stacked or unknown codings (br, zstd, "gzip, br") pass through as sent
            if encoding == "identity" or encoding in DECODABLE_ENCODINGS:
                body = self.rewrite_body(
                    b"".join(res.body), None if encoding == "identity" else encoding
                )
                res.headers.pop("content-encoding", None)
                res.headers.pop("transfer-encoding", None)
                res.headers["content-length"] = str(len(body))
                res.body = [body]
            else:
                log.debug("leaving %s encoded body of %s untouched", encoding, req.url)
        call_next(res, req)
