"""
Local pairing page — shows the current WhatsApp pairing QR code.

Served by a small ``http.server`` on a background thread.  The page is
pull-based: it re-renders whatever challenge is current on each request
and refreshes itself every few seconds.
"""

from __future__ import annotations

import base64
import html
import io
import logging
import threading
import webbrowser
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

import qrcode
import qrcode.image.svg

logger = logging.getLogger("relay.pairing_page")

_PAGE = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta http-equiv="refresh" content="5" />
    <title>WhatsApp Login</title>
    <style>
      body {{ font-family: system-ui, Arial; display:flex; min-height:100vh; align-items:center;
             justify-content:center; background:#0b132b; color:#fff; }}
      .card {{ background:#1c2541; padding:24px; border-radius:16px;
              box-shadow: 0 10px 30px rgba(0,0,0,0.4); text-align:center; }}
      img {{ width:320px; height:320px; background:#fff; padding:10px; border-radius:12px; }}
      h1 {{ margin:0 0 8px; font-size:22px; }}
      p {{ opacity:0.8; margin:0 0 16px; }}
    </style>
  </head>
  <body>
    <div class="card">
      <h1>Scan to Login WhatsApp</h1>
      <p>Open WhatsApp &rarr; Linked devices &rarr; Link a device</p>
      {body}
    </div>
  </body>
</html>
"""


def render_qr_data_url(code: str) -> str:
    """Render *code* as an SVG QR image and return it as a data URL."""
    image = qrcode.make(code, image_factory=qrcode.image.svg.SvgPathImage)
    svg = image.to_string(encoding="unicode")
    if isinstance(svg, str):
        svg = svg.encode("utf-8")
    return "data:image/svg+xml;base64," + base64.b64encode(svg).decode("ascii")


def render_qr_ascii(code: str) -> str:
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.make(fit=True)
    buf = io.StringIO()
    qr.print_ascii(out=buf, invert=True)
    return buf.getvalue()


class PairingPage:
    """Holds the current challenge and serves it over HTTP.

    Args:
        host: Interface to bind.
        port: Port to bind (``QR_PORT``).
        open_browser: Open the page in a browser on the first challenge.
        print_terminal: Also print each challenge as ASCII art.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 3000,
        open_browser: bool = True,
        print_terminal: bool = False,
    ) -> None:
        self.host = host
        self.port = port
        self._open_browser = open_browser
        self._print_terminal = print_terminal
        self._lock = threading.Lock()
        self._qr_data_url = ""
        self._linked = False
        self._browser_opened = False
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return f"http://{'localhost' if self.host in ('127.0.0.1', '0.0.0.0') else self.host}:{self.port}"

    # ----- presenter interface ---------------------------------------------

    def show_challenge(self, code: str) -> None:
        data_url = render_qr_data_url(code)
        with self._lock:
            self._qr_data_url = data_url
            self._linked = False
            first = not self._browser_opened
            self._browser_opened = True

        if self._print_terminal:
            print(render_qr_ascii(code), flush=True)
        if first and self._open_browser:
            threading.Thread(
                target=self._launch_browser, name="wa-relay-browser", daemon=True
            ).start()

    def clear(self) -> None:
        with self._lock:
            self._qr_data_url = ""
            self._linked = True

    def render(self) -> str:
        with self._lock:
            data_url = self._qr_data_url
            linked = self._linked
        if data_url:
            body = f'<img src="{html.escape(data_url, quote=True)}" alt="QR Code" />'
        elif linked:
            body = "<p>Linked. You can close this page.</p>"
        else:
            body = "<p>Waiting for QR...</p>"
        return _PAGE.format(body=body)

    # ----- server ------------------------------------------------------------

    def start(self) -> None:
        page = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                if self.path not in ("/", "/index.html"):
                    self.send_error(404)
                    return
                payload = page.render().encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(payload)))
                self.send_header("Cache-Control", "no-store")
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format: str, *args: object) -> None:
                logger.debug("pairing page: " + format, *args)

        self._server = ThreadingHTTPServer((self.host, self.port), _Handler)
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="wa-relay-pairing-page", daemon=True
        )
        self._thread.start()
        logger.info("QR page on %s", self.url)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _launch_browser(self) -> None:
        try:
            webbrowser.open(self.url)
        except Exception:
            logger.debug("Could not open a browser for %s", self.url, exc_info=True)
