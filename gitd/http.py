"""Git Smart HTTP protocol endpoints for FastAPI.

Requests are matched against a fixed, ordered list of URL patterns and
bridged to ``git-upload-pack`` / ``git-receive-pack`` running in
stateless-rpc mode inside the repository directory.

Protocol Reference:
- https://git-scm.com/docs/http-protocol
- https://github.com/git/git/blob/master/http-backend.c
"""

import asyncio
import logging
import os
import re
from enum import Enum
from typing import List, NamedTuple, Optional, Tuple

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import generate_latest
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from gitd.bridge import DEFAULT_CHUNK_SIZE, run_command
from gitd.config import ServerConfig
from gitd.metrics import GIT_REQUESTS_TOTAL
from gitd.pktline import service_preamble
from gitd.utils import decode_request_stream, resolve_repo_path

logger = logging.getLogger("gitd.http")


class GitOperation(str, Enum):
    """Represent the operations of the smart HTTP protocol."""

    info_refs = "info-refs"
    upload_pack = "git-upload-pack"
    receive_pack = "git-receive-pack"


SERVICES = (GitOperation.upload_pack.value, GitOperation.receive_pack.value)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Same headers as `git http-backend` sends for dynamic content
NOCACHE_HEADERS = {
    "Expires": "Fri, 01 Jan 1980 00:00:00 GMT",
    "Pragma": "no-cache",
    "Cache-Control": "no-cache, max-age=0, must-revalidate",
}


class RoutePattern(NamedTuple):
    """A URL pattern capturing the repository path of an operation."""

    pattern: "re.Pattern[str]"
    operation: GitOperation
    method: str


# Evaluated in order; the suffixes are disjoint so at most one can match.
ROUTES: Tuple[RoutePattern, ...] = (
    RoutePattern(re.compile(r"(.*?)/git-upload-pack"), GitOperation.upload_pack, "POST"),
    RoutePattern(re.compile(r"(.*?)/git-receive-pack"), GitOperation.receive_pack, "POST"),
    RoutePattern(re.compile(r"(.*?)/info/refs"), GitOperation.info_refs, "GET"),
)


def match_route(path: str) -> Optional[Tuple[RoutePattern, str]]:
    """Find the route for a request path.

    Returns:
        Tuple of (route, repository path), or None if no pattern matches.
    """
    for route in ROUTES:
        match = route.pattern.fullmatch(path)
        if match:
            return route, match.group(1)
    return None


class GitServiceResponse(Response):
    """Stream the output of a git service process as the response body.

    The request body is piped into the process while its output is sent
    back to the client. Status and headers go out before the process is
    started, so a failing process can only be signalled by aborting the
    connection: the error is re-raised and the server drops the connection,
    leaving the client with a truncated stream.
    """

    def __init__(
        self,
        command: str,
        args: List[str],
        cwd: str,
        media_type: str,
        preamble: bytes = b"",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """Initialize the response."""
        self.command = command
        self.args = args
        self.cwd = cwd
        self.preamble = preamble
        self.chunk_size = chunk_size
        self.status_code = 200
        self.media_type = media_type
        self.background = None
        self.init_headers(NOCACHE_HEADERS)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Run the git process and stream its output."""
        request = Request(scope, receive)
        body_consumed = asyncio.Event()

        async def request_body():
            try:
                async for chunk in decode_request_stream(
                    request.headers.get("content-encoding"), request.stream()
                ):
                    yield chunk
            finally:
                body_consumed.set()

        async def wait_for_disconnect():
            # receive() belongs to the body reader until the body is complete
            await body_consumed.wait()
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    return

        async def write(chunk: bytes) -> None:
            await send({"type": "http.response.body", "body": chunk, "more_body": True})

        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        if self.preamble:
            await write(self.preamble)

        bridge = asyncio.ensure_future(
            run_command(
                self.cwd,
                self.command,
                self.args,
                request_body(),
                write,
                chunk_size=self.chunk_size,
            )
        )
        watcher = asyncio.ensure_future(wait_for_disconnect())
        try:
            await asyncio.wait({bridge, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
            if not bridge.done():
                bridge.cancel()
            await asyncio.gather(bridge, watcher, return_exceptions=True)

        if bridge.cancelled():
            logger.info(f"Client disconnected, {self.command} in {self.cwd} was terminated")
            return

        error = bridge.exception()
        if error is None:
            await send({"type": "http.response.body", "body": b"", "more_body": False})
            return
        if isinstance(error, (ClientDisconnect, OSError)):
            logger.info(f"Client disconnected during {self.command} in {self.cwd}: {error}")
            return
        logger.error(f"Aborting {self.command} response for {self.cwd}: {error}")
        raise error


class GitHTTPGateway:
    """Serve the repositories below a root directory over smart HTTP."""

    def __init__(self, app: FastAPI, config: ServerConfig) -> None:
        """Initialize the gateway and register its routes."""
        router = APIRouter()
        self.config = config
        self.git_ready = False
        self._handlers = {
            GitOperation.info_refs: self.info_refs,
            GitOperation.upload_pack: self.upload_pack,
            GitOperation.receive_pack: self.receive_pack,
        }

        @router.get("/health/liveness")
        async def liveness() -> JSONResponse:
            """Used for liveness probe."""
            return JSONResponse({"status": "OK"})

        @router.get("/health/readiness")
        async def readiness() -> JSONResponse:
            """Used for readiness probe.

            Checks that git passed the startup check and that the
            repositories root is a directory.
            """
            if not self.git_ready:
                return JSONResponse(
                    {"status": "DOWN", "detail": "Git is not available"},
                    status_code=503,
                )
            if not os.path.isdir(self.config.repos_path):
                return JSONResponse(
                    {
                        "status": "DOWN",
                        "detail": f"Repositories root not found: {self.config.repos_path}",
                    },
                    status_code=503,
                )
            return JSONResponse({"status": "OK"})

        @router.get("/metrics")
        async def metrics():
            """Expose Prometheus metrics."""
            return Response(generate_latest(), media_type="text/plain")

        @router.api_route("/{path:path}", methods=ALL_METHODS)
        async def git_smart_http(path: str, request: Request):
            """Route git smart HTTP requests, if other matches not found."""
            return self.dispatch(request)

        app.include_router(router)

    def dispatch(self, request: Request) -> Response:
        """Match the request against the routes and run the operation."""
        matched = match_route(request.scope["path"])
        if matched is None:
            logger.debug(f"No git route for {request.method} {request.scope['path']}")
            GIT_REQUESTS_TOTAL.labels(operation="none", status="400").inc()
            return PlainTextResponse("Bad Request", status_code=400)

        route, repo_path = matched
        if "\x00" in repo_path:
            logger.warning(f"Rejecting repository path with a NUL byte: {repo_path!r}")
            response = PlainTextResponse("Bad Request", status_code=400)
        elif request.method != route.method:
            response = PlainTextResponse(
                "Method Not Allowed", status_code=405, headers={"Allow": route.method}
            )
        else:
            cwd = resolve_repo_path(self.config.repos_path, repo_path)
            response = self._handlers[route.operation](request, cwd)

        GIT_REQUESTS_TOTAL.labels(
            operation=route.operation.value, status=str(response.status_code)
        ).inc()
        return response

    def info_refs(self, request: Request, cwd: str) -> Response:
        """Advertise the references of a repository."""
        service = request.query_params.get("service")
        if service not in SERVICES:
            # the dumb protocol is not supported
            return PlainTextResponse("Bad Request", status_code=400)

        return GitServiceResponse(
            service,
            ["--stateless-rpc", "--advertise-refs", "."],
            cwd,
            media_type=f"application/x-{service}-advertisement",
            preamble=service_preamble(service),
            chunk_size=self.config.chunk_size,
        )

    def upload_pack(self, request: Request, cwd: str) -> Response:
        """Handle git fetch/clone requests."""
        return self._run_service(GitOperation.upload_pack.value, cwd)

    def receive_pack(self, request: Request, cwd: str) -> Response:
        """Handle git push requests."""
        return self._run_service(GitOperation.receive_pack.value, cwd)

    def _run_service(self, command: str, cwd: str) -> Response:
        return GitServiceResponse(
            command,
            ["--stateless-rpc", "."],
            cwd,
            media_type=f"application/x-{command}-result",
            chunk_size=self.config.chunk_size,
        )
