"""
devproxy.policy
~~~~~~~~~~~~~~~
Builds the routing and rewrite policy a reverse-proxy engine executes
in front of a local dev server.

With this policy the backend auth flow works unchanged through the proxy:

1. The browser opens local ``/auth``, which is forwarded to the backend.
2. The backend reads ``X-Forwarded-Host`` and builds its callback URL from it.
3. The third-party service redirects back to local ``/callback``.
4. ``/callback`` is forwarded and processed by the backend.
5. The final redirect to a backend URL is rewritten to a local one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from .config import Config
from .logger import get_logger
from .routing import STANDARD_PATHS, STANDARD_SUBPATHS, BypassRule, PathSet
from .stages import (
    ForwardedHeaders,
    HeaderOverrides,
    InsecureCookies,
    OriginRewrite,
    ProxyRequest,
    ProxyResponse,
    RedirectRewrite,
    RequestHandler,
    ResponseHandler,
    SessionMarker,
    SessionStrip,
    chain_requests,
    chain_responses,
)
from .tls import CertFiles, CertOptions, TLSMaterial, create_self_signed_cert

log = get_logger("policy")


@dataclass(frozen=True)
class PolicySettings:
    standard_paths: Tuple[str, ...] = STANDARD_PATHS
    standard_subpaths: Tuple[str, ...] = STANDARD_SUBPATHS
    marker_cookie: str = "proxybackend"
    session_cookie: str = "sessionid"
    marker_max_age_days: int = 365


@dataclass(frozen=True)
class ProxyPolicy:
    target: str
    headers: Dict[str, str]
    routes: PathSet
    bypass: Callable[[ProxyRequest], Optional[str]]
    on_proxy_req: RequestHandler
    on_proxy_res: ResponseHandler
    protocol_rewrite: str
    change_origin: bool = True
    xfwd: bool = True
    auto_rewrite: bool = True
    log_level: str = "info"
    ssl: Optional[TLSMaterial] = None
    cert_files: Optional[CertFiles] = None
    origin_rewrites: Tuple[str, ...] = field(default=())

    def as_options(self) -> Dict[str, Any]:
        """Engine option names as used by node-http-proxy style engines."""
        opts: Dict[str, Any] = {
            "target": self.target,
            "headers": dict(self.headers),
            "changeOrigin": self.change_origin,
            "xfwd": self.xfwd,
            "autoRewrite": self.auto_rewrite,
            "protocolRewrite": self.protocol_rewrite,
            "logLevel": self.log_level,
            "bypass": self.bypass,
            "onProxyReq": self.on_proxy_req,
            "onProxyRes": self.on_proxy_res,
        }
        if self.ssl is not None:
            opts["ssl"] = {"key": self.ssl.key, "cert": self.ssl.cert}
        return opts


def _backend_host(backend: str) -> str:
    host = urlsplit(backend).netloc
    if not host:
        raise ValueError(f"Backend must be an absolute origin such as https://example.com, got {backend!r}")
    return host


def create_backend_proxy(
    backend: str,
    paths: Sequence[str] = (),
    subpaths: Sequence[str] = (),
    insecure: bool = False,
    origin_rewrites: Sequence[str] = (),
    generate_cert: bool = False,
    cert_server: bool = False,
    ssl: CertOptions | None = None,
    settings: PolicySettings | None = None,
    debug: bool = False,
    cert_server_host: str = "0.0.0.0",
    cert_server_port: int = 3007,
    cert_server_log_path: str | None = None,
    **bootstrap: Any,
) -> ProxyPolicy:
    """Build the proxy policy for *backend*.

    TLS material is only produced when not *insecure* and *generate_cert*
    is set; building a policy for a one-off bundle run should not touch
    the certificate store.  Extra keyword arguments (``issuer``,
    ``trust_store``, ``discover``) are handed to the certificate bootstrap.
    """
    settings = settings or PolicySettings()
    backend = backend.rstrip("/")
    backend_host = _backend_host(backend)

    routes = PathSet.build(
        paths,
        subpaths,
        standard_paths=settings.standard_paths,
        standard_subpaths=settings.standard_subpaths,
    )
    # Referer must be the backend or its csrf validation fails
    headers = {"Referer": backend}

    on_proxy_req = chain_requests(
        [
            HeaderOverrides(headers, backend_host),
            ForwardedHeaders(),
            SessionStrip(backend, settings.marker_cookie, settings.session_cookie),
        ]
    )

    protocol = "http" if insecure else "https"
    response_stages = []
    if insecure:
        response_stages.append(InsecureCookies())
    response_stages += [
        SessionMarker(
            backend,
            settings.marker_cookie,
            settings.session_cookie,
            settings.marker_max_age_days,
        ),
        RedirectRewrite(protocol, backend_host),
    ]
    rewrites = tuple(o for o in origin_rewrites if o)
    if rewrites:
        response_stages.append(OriginRewrite(rewrites))
    on_proxy_res = chain_responses(response_stages)

    cert_files = material = None
    if not insecure and generate_cert:
        cert_files = create_self_signed_cert(ssl, **bootstrap)
        material = cert_files.read()
        if cert_server:
            from .server import start_cert_server

            start_cert_server(
                cert_files.ca_cert,
                host=cert_server_host,
                port=cert_server_port,
                log_path=cert_server_log_path,
            )

    log.debug("proxying %s for paths=%s subpaths=%s", backend, routes.paths, routes.subpaths)
    return ProxyPolicy(
        target=backend,
        headers=headers,
        routes=routes,
        bypass=BypassRule(routes),
        on_proxy_req=on_proxy_req,
        on_proxy_res=on_proxy_res,
        protocol_rewrite=protocol,
        log_level="debug" if debug else "info",
        ssl=material,
        cert_files=cert_files,
        origin_rewrites=rewrites,
    )


def create_backend_proxy_from_config(cfg: Config, **bootstrap: Any) -> ProxyPolicy:
    return create_backend_proxy(
        cfg.backend,
        paths=cfg.paths,
        subpaths=cfg.subpaths,
        insecure=cfg.insecure,
        origin_rewrites=cfg.origin_rewrites,
        generate_cert=cfg.generate_cert,
        cert_server=cfg.cert_server,
        ssl=CertOptions(
            additional_domains=cfg.additional_domains,
            additional_ips=cfg.additional_ips,
            home=cfg.home,
            force=cfg.force_cert,
            issuer=cfg.issuer,
        ),
        debug=cfg.debug,
        cert_server_host=cfg.cert_server_host,
        cert_server_port=cfg.cert_server_port,
        cert_server_log_path=cfg.log_path,
        **bootstrap,
    )
