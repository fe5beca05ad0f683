from __future__ import annotations

import gzip
import http
import mimetypes
from pathlib import Path
from typing import Dict, Optional

import rich
import websockets.asyncio.server
from rich.markup import escape
from websockets.asyncio.server import ServerConnection
from websockets.datastructures import Headers
from websockets.http11 import Request, Response


class StaticFileServer:
    """Serves files from a directory over plain HTTP, on its own port.

    This is the endpoint that page-rendering clients load from. It is independent
    of the websocket endpoint: every request is answered in `process_request`,
    so no websocket handshake ever completes here.

    Args:
        root: Directory to serve. `/` maps to `index.html`.
        host: Host to bind server to.
        port: Port to bind server to. Use 0 for an ephemeral port.
        verbose: Toggle for print messages.
    """

    def __init__(self, root: Path, host: str, port: int, verbose: bool = True):
        self._root = root.absolute()
        self._host = host
        self._port = port
        self._verbose = verbose
        self._listener: Optional[websockets.asyncio.server.Server] = None

        self._file_cache: Dict[Path, bytes] = {}
        self._file_cache_gzipped: Dict[Path, bytes] = {}

    async def start(self) -> None:
        """Bind the port. Must be awaited on the event loop the server should run on.

        Raises:
            OSError: if the port can't be bound.
        """
        self._listener = await websockets.asyncio.server.serve(
            _reject_websocket,
            self._host,
            self._port,
            process_request=self._process_request,
        )
        sockets = list(self._listener.sockets)
        if len(sockets) > 0:
            self._port = sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.close()
        await self._listener.wait_closed()
        self._listener = None

    def get_port(self) -> int:
        return self._port

    def _process_request(
        self, connection: ServerConnection, request: Request
    ) -> Response:
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return connection.respond(
                http.HTTPStatus.NOT_FOUND, "Websocket connections use another port.\n"
            )

        # Strip out search params, get relative path.
        path = request.path.partition("?")[0]
        relpath = path.lstrip("/")
        if relpath == "":
            relpath = "index.html"

        source_path = (self._root / relpath).resolve()
        if not source_path.is_relative_to(self._root.resolve()):
            return _response(http.HTTPStatus.FORBIDDEN, {}, b"403")
        if not source_path.is_file():
            return _response(http.HTTPStatus.NOT_FOUND, {}, b"404")

        if self._verbose:
            rich.print(f"[bold](roomcast)[/bold] GET {escape(path)}")

        response_headers = {
            "Content-Type": str(mimetypes.guess_type(relpath)[0]),
        }

        if source_path not in self._file_cache:
            self._file_cache[source_path] = source_path.read_bytes()
        if "gzip" in request.headers.get("Accept-Encoding", ""):
            response_headers["Content-Encoding"] = "gzip"
            if source_path not in self._file_cache_gzipped:
                self._file_cache_gzipped[source_path] = gzip.compress(
                    self._file_cache[source_path]
                )
            payload = self._file_cache_gzipped[source_path]
        else:
            payload = self._file_cache[source_path]

        return _response(http.HTTPStatus.OK, response_headers, payload)


def _response(
    status: http.HTTPStatus, headers: Dict[str, str], body: bytes
) -> Response:
    all_headers = Headers(headers)
    all_headers["Content-Length"] = str(len(body))
    all_headers["Connection"] = "close"
    return Response(status.value, status.phrase, all_headers, body)


async def _reject_websocket(websocket: ServerConnection) -> None:
    await websocket.close()
