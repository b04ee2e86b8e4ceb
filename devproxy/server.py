"""
devproxy.server
~~~~~~~~~~~~~~~
Tiny plain-http server that hands the root CA certificate to phones and
other machines on the LAN, together with install instructions.
"""

from __future__ import annotations

import asyncio
import html
import threading
import time
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlsplit

from .logger import AccessLogger, get_logger
from .stages import ProxyError

log = get_logger("server")

CRLF = b"\r\n"
MAX_HEAD = 16_384
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3007

CA_CONTENT_TYPE = "application/x-x509-ca-cert"
NOT_FOUND = b"404 - Not Found"

_REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    500: "Internal Server Error",
}

INDEX_HTML = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>Install the development root certificate</title>
  </head>
  <body>
    <h1>Development root certificate</h1>
    <p><a href="/{cert_name}">Download {cert_name}</a></p>
    <h2>iOS</h2>
    <ol>
      <li>Open this page in Safari and tap the download link, then allow the profile download.</li>
      <li>Settings &rsaquo; General &rsaquo; VPN &amp; Device Management: install the downloaded profile.</li>
      <li>Settings &rsaquo; General &rsaquo; About &rsaquo; Certificate Trust Settings: enable full trust for the certificate.</li>
    </ol>
    <h2>Android</h2>
    <ol>
      <li>Tap the download link.</li>
      <li>Settings &rsaquo; Security &rsaquo; Encryption &amp; credentials &rsaquo; Install a certificate &rsaquo; CA certificate.</li>
      <li>Pick the downloaded file. It is listed under trusted credentials afterwards.</li>
    </ol>
    <h2>Other machines</h2>
    <p>Import the file into the system or browser certificate store as a trusted root authority.</p>
  </body>
</html>
"""


def run_cert_server(
    ca_cert: str | Path,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    log_path: str | Path | None = None,
) -> None:
    server = CertServer(ca_cert, host, port, AccessLogger(log_path))
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        log.info("Root cert install server shut down.")


def start_cert_server(
    ca_cert: str | Path,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    log_path: str | Path | None = None,
) -> threading.Thread:
    """Run the server in a daemon thread next to whatever owns the main loop."""
    t = threading.Thread(
        target=run_cert_server,
        args=(ca_cert, host, port, log_path),
        name="devproxy-cert-server",
        daemon=True,
    )
    t.start()
    return t


class CertServer:
    def __init__(
        self,
        ca_cert: str | Path,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        access_log: AccessLogger | None = None,
    ) -> None:
        ca_cert = Path(ca_cert)
        self.host = host
        self.port = port
        self.cert_name = ca_cert.name
        self.cert = ca_cert.read_bytes()
        self.index = INDEX_HTML.format(cert_name=html.escape(self.cert_name)).encode()
        self.access_log = access_log or AccessLogger()

    async def start(self) -> asyncio.AbstractServer:
        return await asyncio.start_server(self._handle_client, host=self.host, port=self.port)

    async def serve_forever(self) -> None:
        server = await self.start()
        bind_str = ", ".join(str(s.getsockname()) for s in server.sockets)
        log.info("Running root cert install server at %s", bind_str)

        async with server:
            await server.serve_forever()

    def route(self, method: str, target: str) -> Tuple[int, str, bytes]:
        path = urlsplit(target).path
        if method in ("GET", "HEAD"):
            if path == "/":
                return 200, "text/html", self.index
            if path == f"/{self.cert_name}":
                return 200, CA_CONTENT_TYPE, self.cert
        return 404, "text/plain", NOT_FOUND

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        start_ts = time.time()
        peer = writer.get_extra_info("peername")
        peer_ip = peer[0] if peer else "-"
        method, target, status, sent = "-", "-", 500, 0

        try:
            req_line = await _read_request_head(reader)
            method, target, _ = _parse_request_line(req_line)
            status, ctype, body = self.route(method, target)
            if method == "HEAD":
                sent = await _send_response(writer, status, ctype, b"", len(body))
            else:
                sent = await _send_response(writer, status, ctype, body)
        except ProxyError as e:
            status = e.status
            try:
                sent = await _send_response(writer, e.status, "text/plain", e.msg.encode())
            except ConnectionError:
                pass
        except ConnectionError as e:
            self.access_log.error(peer_ip, f"connection lost: {e}")
            return
        except Exception:  # noqa: BLE001
            log.exception("cert server failed on %s %s", method, target)
            status = 500
            try:
                sent = await _send_response(writer, 500, "text/plain", b"Internal Server Error")
            except ConnectionError:
                pass
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except ConnectionError:
                pass

        self.access_log.end(
            peer_ip,
            method,
            target,
            status,
            sent,
            int((time.time() - start_ts) * 1000),
        )


async def _read_request_head(reader: asyncio.StreamReader) -> bytes:
    """Consume the request head and return its request line. Headers are skipped."""
    head = b""
    while True:
        try:
            line = await reader.readline()
        except (asyncio.LimitOverrunError, ValueError):
            raise ProxyError(400, "Bad Request: header line too long") from None
        if not line:
            raise ProxyError(400, "Bad Request: EOF before headers complete")
        head += line
        if len(head) > MAX_HEAD:
            raise ProxyError(400, "Bad Request: head too large")
        if line in (CRLF, b"\n"):
            break

    lines = head.replace(CRLF, b"\n").split(b"\n")[:-2]
    if not lines or not lines[0].strip():
        raise ProxyError(400, "Bad Request: empty head")

    return lines[0]


def _parse_request_line(line: bytes) -> Tuple[str, str, str]:
    try:
        method, target, version = line.decode("ascii").strip().split()
    except (UnicodeDecodeError, ValueError):
        raise ProxyError(400, "Bad Request: malformed request-line") from None
    if not method.isalpha() or not target.startswith("/") or not version.startswith("HTTP/"):
        raise ProxyError(400, "Bad Request: malformed request-line")
    return method.upper(), target, version


async def _send_response(
    writer: asyncio.StreamWriter,
    status: int,
    content_type: str,
    body: bytes = b"",
    content_length: Optional[int] = None,
) -> int:
    reason = _REASONS.get(status, "Error")
    length = len(body) if content_length is None else content_length
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {length}\r\n"
        "Connection: close\r\n\r\n"
    )
    writer.write(head.encode() + body)
    await writer.drain()
    return len(body)
