"""Provide utilities that should not be aware of the git protocol."""
import logging
import os
import posixpath
import time
import zlib
from typing import AsyncIterator, List, Optional

from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("gitd.utils")

_os_alt_seps: List[str] = list(
    sep for sep in [os.path.sep, os.path.altsep] if sep is not None and sep != "/"
)

GZIP_ENCODINGS = ("gzip", "x-gzip")
# a gzip member header is at least 10 bytes long
_GZIP_HEADER_SIZE = 10


def sanitize_path(name: str) -> str:
    """Sanitize an untrusted path so it cannot climb out of a base directory.

    Drive labels are dropped, the path is normalized lexically and any
    leading ``../`` left after normalization is stripped. The result is not
    guaranteed to exist.
    """
    if len(name) > 1 and name[1] == ":" and name[0].isalpha():
        name = name[2:]

    for sep in _os_alt_seps:
        name = name.replace(sep, "/")
    name = posixpath.normpath(name)
    if name.startswith("//"):
        name = "/" + name.lstrip("/")

    while name.startswith("../"):
        name = name[3:]
    if name == "..":
        name = "."
    return name


def resolve_repo_path(root: str, path: str) -> str:
    """Join an untrusted repository path to the repositories root."""
    name = sanitize_path(path).lstrip("/")
    if name in ("", "."):
        return root
    return posixpath.join(root, name)


async def _passthrough(
    head: bytes, stream: AsyncIterator[bytes]
) -> AsyncIterator[bytes]:
    if head:
        yield head
    async for chunk in stream:
        if chunk:
            yield chunk


def _new_gzip_decompressor():
    return zlib.decompressobj(16 + zlib.MAX_WBITS)


async def _gunzip(
    decompressor, head: bytes, stream: AsyncIterator[bytes]
) -> AsyncIterator[bytes]:
    """Inflate a gzip body, continuing across concatenated members.

    Bytes after the last member that do not start a new gzip member are
    dropped with a warning.
    """
    discarded = 0

    def inflate(data: bytes) -> bytes:
        nonlocal decompressor, discarded
        output = []
        while data:
            if discarded:
                discarded += len(data)
                break
            if decompressor.eof:
                decompressor = _new_gzip_decompressor()
            try:
                output.append(decompressor.decompress(data))
            except zlib.error as e:
                logger.debug(f"Trailing data after the gzip body: {e}")
                discarded = len(data)
                break
            data = decompressor.unused_data if decompressor.eof else b""
        return b"".join(output)

    data = inflate(head)
    if data:
        yield data
    async for chunk in stream:
        if not chunk:
            continue
        data = inflate(chunk)
        if data:
            yield data
    if not discarded:
        data = decompressor.flush()
        if data:
            yield data
    else:
        logger.warning(
            f"Ignored {discarded} bytes after the end of the gzip request body"
        )


async def decode_request_stream(
    content_encoding: Optional[str], stream: AsyncIterator[bytes]
) -> AsyncIterator[bytes]:
    """Decode a request body according to its Content-Encoding.

    Gzip bodies are inflated on the fly. If the leading bytes are not a valid
    gzip header the raw body is passed through, so a client sending an
    uncompressed payload with a wrong header still gets served.
    """
    encoding = (content_encoding or "").strip().lower()
    if not encoding or encoding == "identity":
        async for chunk in _passthrough(b"", stream):
            yield chunk
        return

    if encoding not in GZIP_ENCODINGS:
        logger.warning(
            f"Unsupported Content-Encoding '{content_encoding}', "
            "passing the request body through unchanged"
        )
        async for chunk in _passthrough(b"", stream):
            yield chunk
        return

    iterator = stream.__aiter__()
    head = b""
    while len(head) < _GZIP_HEADER_SIZE:
        try:
            head += await iterator.__anext__()
        except StopAsyncIteration:
            break

    decompressor = _new_gzip_decompressor()
    try:
        first = decompressor.decompress(head)
    except zlib.error as e:
        logger.warning(
            f"Failed to decompress request body ({e}), using the raw body instead"
        )
        async for chunk in _passthrough(head, iterator):
            yield chunk
        return

    if first:
        yield first
    rest = decompressor.unused_data if decompressor.eof else b""
    async for chunk in _gunzip(decompressor, rest, iterator):
        yield chunk


class RequestLoggingMiddleware:
    """Middleware to log one access line per HTTP request."""

    def __init__(self, app: ASGIApp, logger_name: str = "gitd.access") -> None:
        """Initialize the middleware."""
        self.app = app
        self.logger = logging.getLogger(logger_name)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Call the middleware."""
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.monotonic()
        status = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            client = scope.get("client")
            self.logger.info(
                "%s %s %s %s %.3fs",
                client[0] if client else "-",
                scope["method"],
                scope["path"],
                status if status is not None else "-",
                time.monotonic() - start,
            )
