"""Answer-file HTTP server for unattended installs.

The Debian installer fetches its preseed file (and a post-install script
referenced from it) over HTTP. This module serves both from templates:

- ``/preseed.cfg``: ``preseeds.d/<name>.cfg``, falling back to ``default.cfg``
- ``/install.sh``: ``installs.d/<name>.sh``, falling back to ``default.sh``

Templates use ``$name`` placeholders filled from the profile's top-level
fields; unknown placeholders are left untouched.

The server is a FastAPI app hosted by uvicorn on a daemon thread for the
duration of one build. uvicorn's log output and a per-request access log
go to an in-memory buffer owned by the server instance; nothing is written
to the process's stdout.
"""

from __future__ import annotations

import io
import logging
import socket
import string
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from pim_build import __version__
from pim_build.errors import BuildError
from pim_build.profiles.resolver import Profile

logger = logging.getLogger(__name__)

PRESEED_PATH = "preseed.cfg"
INSTALL_SCRIPT_PATH = "install.sh"
PRESEEDS_DIRNAME = "preseeds.d"
INSTALLS_DIRNAME = "installs.d"
DEFAULT_TEMPLATE = "default"

# Address of the host as seen from QEMU user-mode networking
QEMU_USER_NET_HOST = "10.0.2.2"

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def host_address() -> str:
    """Return the host's first non-loopback IPv4 address.

    Falls back to the QEMU user-networking gateway address when the host
    has no such address.
    """
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        infos = []
    for info in infos:
        address = str(info[4][0])
        if not address.startswith("127."):
            return address
    return QEMU_USER_NET_HOST


def template_variables(profile: Profile) -> dict[str, str]:
    """Flatten a profile's top-level fields into template variables.

    Scalars are stringified and lists are space-joined; nested mappings are
    skipped.
    """
    variables: dict[str, str] = {"profile": profile.name}
    for key, value in profile.data.items():
        if isinstance(value, dict) or value is None:
            continue
        if isinstance(value, (list, tuple)):
            variables[str(key)] = " ".join(str(v) for v in value)
        elif isinstance(value, bool):
            variables[str(key)] = "true" if value else "false"
        else:
            variables[str(key)] = str(value)
    return variables


class TemplateRenderer:
    """Find and render answer-file templates for one profile.

    Args:
        profile: Profile providing template variables.
        name: Template name to look up (usually the profile name).
        search_dirs: Base directories in priority order.
        extra_variables: Variables added to (and overriding) the profile's.
    """

    def __init__(
        self,
        profile: Profile,
        name: str,
        search_dirs: Sequence[Path],
        extra_variables: dict[str, str] | None = None,
    ) -> None:
        self.profile = profile
        self.name = name
        self.search_dirs = [Path(d) for d in search_dirs]
        self.extra_variables = dict(extra_variables or {})

    def variables(self) -> dict[str, str]:
        return {**template_variables(self.profile), **self.extra_variables}

    def find_template(self, dirname: str, suffix: str) -> Path | None:
        for candidate in (self.name, DEFAULT_TEMPLATE):
            for base in self.search_dirs:
                path = base / dirname / f"{candidate}{suffix}"
                if path.is_file():
                    return path
        return None

    def render(self, dirname: str, suffix: str) -> str | None:
        path = self.find_template(dirname, suffix)
        if path is None:
            return None
        template = string.Template(path.read_text(encoding="utf-8"))
        return template.safe_substitute(self.variables())

    def preseed(self) -> str | None:
        return self.render(PRESEEDS_DIRNAME, ".cfg")

    def install_script(self) -> str | None:
        return self.render(INSTALLS_DIRNAME, ".sh")


def create_app(renderer: TemplateRenderer, access_log: io.StringIO | None = None) -> FastAPI:
    """Create the answer-file application.

    Args:
        renderer: Template renderer for the profile being built.
        access_log: Buffer receiving one line per request.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="pim answer-file server",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @application.middleware("http")
    async def record_request(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        if access_log is not None:
            client = request.client.host if request.client else "-"
            access_log.write(
                f"{client} {request.method} {request.url.path} {response.status_code}\n"
            )
        return response

    @application.get(f"/{PRESEED_PATH}", response_class=PlainTextResponse)
    def preseed() -> PlainTextResponse:
        """Serve the rendered preseed file."""
        content = renderer.preseed()
        if content is None:
            return PlainTextResponse(f"No preseed template for {renderer.name}\n", status_code=404)
        return PlainTextResponse(content)

    @application.get(f"/{INSTALL_SCRIPT_PATH}", response_class=PlainTextResponse)
    def install_script() -> PlainTextResponse:
        """Serve the rendered post-install script."""
        content = renderer.install_script()
        if content is None:
            return PlainTextResponse(
                f"No install script template for {renderer.name}\n", status_code=404
            )
        return PlainTextResponse(content, media_type="text/x-shellscript")

    return application


class AnswerFileServer:
    """Serve answer files for one build on a background thread.

    Args:
        profile: Profile providing template variables.
        port: TCP port to listen on.
        name: Template name to look up.
        search_dirs: Base directories searched for templates.
        host: Bind address. The installer reaches the server through QEMU
            user networking, so the default listens on all interfaces.
        startup_timeout: Seconds to wait for the server to accept requests.
    """

    def __init__(
        self,
        profile: Profile,
        port: int,
        name: str | None = None,
        search_dirs: Sequence[Path] = (),
        host: str = "0.0.0.0",
        startup_timeout: float = 10.0,
    ) -> None:
        self.profile = profile
        self.port = port
        self.name = name or profile.name
        self.host = host
        self.startup_timeout = startup_timeout
        self.renderer = TemplateRenderer(
            profile,
            self.name,
            search_dirs,
            extra_variables={"server_url": f"http://{host_address()}:{port}"},
        )
        self._buffer = io.StringIO()
        self.app = create_app(self.renderer, access_log=self._buffer)
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._log_handler: logging.Handler | None = None
        self._saved_propagate: dict[str, bool] = {}

    @property
    def logs(self) -> str:
        """Captured server and access log output."""
        return self._buffer.getvalue()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def url_for(self, path: str, address: str | None = None) -> str:
        """URL of an endpoint as reachable from the guest."""
        return f"http://{address or host_address()}:{self.port}/{path.lstrip('/')}"

    def _capture_logs(self) -> None:
        handler = logging.StreamHandler(self._buffer)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        for name in UVICORN_LOGGERS:
            log = logging.getLogger(name)
            self._saved_propagate[name] = log.propagate
            log.addHandler(handler)
            log.propagate = False
        self._log_handler = handler

    def _release_logs(self) -> None:
        if self._log_handler is None:
            return
        for name in UVICORN_LOGGERS:
            log = logging.getLogger(name)
            log.removeHandler(self._log_handler)
            log.propagate = self._saved_propagate.get(name, True)
        self._log_handler = None
        self._saved_propagate = {}

    def start(self) -> AnswerFileServer:
        """Start serving and block until the port is bound.

        Raises:
            BuildError: If the server does not come up in time.
        """
        if self.running:
            return self
        self._capture_logs()
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_config=None,
            access_log=False,
            log_level="info",
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run, name=f"answer-file-server-{self.port}", daemon=True
        )
        self._server = server
        self._thread = thread
        thread.start()

        deadline = time.monotonic() + self.startup_timeout
        while not server.started:
            if not thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                raise BuildError(
                    f"Answer-file server failed to start on port {self.port}: "
                    f"{self.logs.strip() or 'no output'}"
                )
            time.sleep(0.05)

        logger.info("Answer-file server listening on %s:%d", self.host, self.port)
        return self

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the server. Safe to call repeatedly."""
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is not None:
            server.should_exit = True
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Answer-file server thread did not stop within %gs", timeout)
        self._release_logs()

    def __enter__(self) -> AnswerFileServer:
        return self.start()

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()


__all__ = [
    "INSTALL_SCRIPT_PATH",
    "PRESEED_PATH",
    "AnswerFileServer",
    "TemplateRenderer",
    "create_app",
    "host_address",
    "template_variables",
]
