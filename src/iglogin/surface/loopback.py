"""Loopback rendering surface -- system browser plus a local redirect listener.

:class:`LoopbackBrowserSurface` lets the flow run from a terminal without
an embedded web view. The authorization URL is opened in the user's
default browser and a single-threaded HTTP server listens on the host and
port of the redirect URI (which therefore has to be an
``http://127.0.0.1:<port>/...`` or ``http://localhost:<port>/...`` URL
registered with the app).

What the listener can observe is narrower than a web view: it only sees
requests that reach the redirect URI, never the provider's own pages.

- A redirect carrying a query string (``?code=...`` or ``?error=...``) is
  reported as a navigation event straight away.
- A redirect without one may still carry a fragment
  (``#access_token=...``), which browsers never send to servers. The
  listener answers with a bridge page whose script posts
  ``location.href`` back, and forwards any ``postMessage`` payload the
  page receives as an in-page message. Those POSTs are accepted only
  with an ``Origin`` header equal to the redirect URI's origin, so other
  pages open in the browser cannot inject a redirect.

Events carry the navigation context that was current when the redirect
reached the listener; for fragment redirects, when the bridge page was
served. Every tab the surface opened shares one listener, so a tab
opened before a :meth:`remount` that redirects after it cannot be told
apart from the current one.

Requests are handled on a daemon thread; events are handed to the bound
listener on the asyncio loop that was running when :meth:`load` was
called.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import webbrowser
from concurrent.futures import Future
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

from iglogin.exceptions import SurfaceError
from iglogin.models import NavigationEvent
from iglogin.surface.base import RenderingSurface

logger = logging.getLogger(__name__)

NAVIGATION_PATH = "/__iglogin/navigation"
MESSAGE_PATH = "/__iglogin/message"

_LOOPBACK_HOSTS = ("127.0.0.1", "localhost")

_BRIDGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Completing login</title></head>
<body>
<h2 id="status">Completing login&hellip;</h2>
<script>
(function () {
  function send(path, body) {
    return fetch(path, {method: "POST", headers: {"Content-Type": "text/plain"}, body: body});
  }
  window.addEventListener("message", function (event) {
    var data = typeof event.data === "string" ? event.data : JSON.stringify(event.data);
    send("%(message)s?context=%(context)d", data);
  });
  send("%(navigation)s?context=%(context)d", window.location.href).then(function () {
    document.getElementById("status").textContent =
      "Login captured. You can close this window and return to the terminal.";
  });
})();
</script>
</body>
</html>
"""

_DONE_PAGE = (
    "<html><body><h2>Login captured. You can close this window "
    "and return to the terminal.</h2></body></html>"
)


class LoopbackBrowserSurface(RenderingSurface):
    """Drive the login in the system browser and listen on the redirect URI.

    Args:
        redirect_uri: The app's registered redirect URI. Its host must be a
            loopback address and it must name an explicit port.
        open_browser: Callable used to open URLs. Defaults to
            :func:`webbrowser.open`; tests substitute a recorder.

    Raises:
        SurfaceError: If *redirect_uri* is not a plain-HTTP loopback URL
            with a port.
    """

    def __init__(
        self,
        redirect_uri: str,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        super().__init__()
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or parsed.hostname not in _LOOPBACK_HOSTS:
            raise SurfaceError(
                f"Loopback surface needs an http://127.0.0.1 or http://localhost "
                f"redirect URI, got {redirect_uri!r}"
            )
        if not parsed.port:
            raise SurfaceError(f"Redirect URI {redirect_uri!r} must include a port")

        self._redirect_uri = redirect_uri
        self._origin = f"{parsed.scheme}://{parsed.netloc}"
        self._host = parsed.hostname
        self._port = parsed.port
        self._redirect_path = parsed.path or "/"
        self._open_browser = open_browser

        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._url: Optional[str] = None
        self._visible = False

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def port(self) -> int:
        """Port the listener is bound to (differs from the URI only when it was 0)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self._port

    # ------------------------------------------------------------------
    # RenderingSurface
    # ------------------------------------------------------------------

    def load(self, url: str, headers: dict[str, str], *, incognito: bool = False) -> None:
        """Start the listener and open *url* in the system browser.

        Must be called from a coroutine: the running loop becomes the
        loop events are delivered on.

        Raises:
            SurfaceError: If there is no running event loop or the
                redirect port cannot be bound.
        """
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise SurfaceError("LoopbackBrowserSurface.load() needs a running event loop") from exc

        if headers:
            logger.debug(
                "System browser ignores request headers %s", ", ".join(sorted(headers))
            )
        if incognito:
            logger.debug("System browser cannot be forced into a private session")

        self._start_server()
        self._url = url
        self._launch(url)

    def stop_loading(self) -> None:
        # Nothing is loading on our side; the browser tab stays on the bridge page.
        logger.debug("stop_loading: no in-flight load to abort")

    def show(self) -> None:
        self._visible = True

    def hide(self) -> None:
        self._visible = False
        server = self._server
        if server is not None:
            self._server = None
            # shutdown() blocks until serve_forever() returns; keep it off the loop.
            threading.Thread(target=self._close_server, args=(server,), daemon=True).start()

    def remount(self) -> int:
        context = super().remount()
        if self._url is not None:
            logger.debug("Reopening authorization URL in context %d", context)
            self._launch(self._url)
        return context

    def close(self) -> None:
        """Stop the listener synchronously. Safe to call more than once."""
        self._visible = False
        server, self._server = self._server, None
        if server is not None:
            self._close_server(server)

    # ------------------------------------------------------------------
    # Listener plumbing
    # ------------------------------------------------------------------

    def _start_server(self) -> None:
        if self._server is not None:
            return
        try:
            server = HTTPServer((self._host, self._port), self._make_handler())
        except OSError as exc:
            raise SurfaceError(
                f"Cannot listen on {self._host}:{self._port} for the redirect: {exc}"
            ) from exc
        self._server = server
        self._thread = threading.Thread(
            target=server.serve_forever, name="iglogin-loopback", daemon=True
        )
        self._thread.start()
        logger.debug("Listening for redirects on %s%s", self._origin, self._redirect_path)

    @staticmethod
    def _close_server(server: HTTPServer) -> None:
        server.shutdown()
        server.server_close()

    def _launch(self, url: str) -> None:
        browser_thread = threading.Thread(target=self._open_browser, args=(url,), daemon=True)
        browser_thread.start()

    def _is_redirect_path(self, path: str) -> bool:
        return path == self._redirect_path

    def _bridge_page(self) -> str:
        return _BRIDGE_TEMPLATE % {
            "message": MESSAGE_PATH,
            "navigation": NAVIGATION_PATH,
            "context": self.context,
        }

    def _deliver_navigation(self, url: str, context: int) -> None:
        listener, loop = self.listener, self._loop
        if listener is None or loop is None:
            logger.warning("Dropping navigation to %s: no listener bound", url)
            return
        event = NavigationEvent(url=url, title="", is_loading=False, context=context)
        future = asyncio.run_coroutine_threadsafe(listener.on_navigation(event), loop)
        future.add_done_callback(_log_failed_delivery)

    def _deliver_message(self, raw: str, context: int) -> None:
        listener, loop = self.listener, self._loop
        if listener is None or loop is None:
            logger.warning("Dropping in-page message: no listener bound")
            return
        if context != self.context:
            logger.debug("Dropping in-page message from stale context %d", context)
            return
        loop.call_soon_threadsafe(listener.on_message, raw)

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        surface = self

        class RedirectHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if not surface._is_redirect_path(parsed.path):
                    self._reply(404, "<html><body><h2>Not found</h2></body></html>")
                    return
                if parsed.query:
                    surface._deliver_navigation(surface._origin + self.path, surface.context)
                    self._reply(200, _DONE_PAGE)
                else:
                    self._reply(200, surface._bridge_page())

            def do_POST(self) -> None:
                length = int(self.headers.get("Content-Length", 0) or 0)
                body = self.rfile.read(length).decode("utf-8", errors="replace")
                parsed = urlparse(self.path)
                if parsed.path not in (NAVIGATION_PATH, MESSAGE_PATH):
                    self._reply(404, "")
                    return

                origin = self.headers.get("Origin")
                if origin != surface._origin:
                    logger.warning("Rejecting bridge request from origin %r", origin)
                    self._reply(403, "")
                    return
                context = self._context(parsed.query)
                if context is None:
                    self._reply(400, "")
                    return

                if parsed.path == NAVIGATION_PATH:
                    surface._deliver_navigation(body, context)
                else:
                    surface._deliver_message(body, context)
                self.send_response(204)
                self.end_headers()

            @staticmethod
            def _context(query: str) -> Optional[int]:
                try:
                    return int(parse_qs(query)["context"][0])
                except (KeyError, ValueError):
                    return None

            def _reply(self, status: int, body: str) -> None:
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.end_headers()
                self.wfile.write(body.encode("utf-8"))

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug("loopback: " + format, *args)

        return RedirectHandler


def _log_failed_delivery(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Navigation handler raised: %s", exc, exc_info=exc)
