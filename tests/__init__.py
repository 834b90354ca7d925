"""Test the gitd module."""

import os
import shutil
import socket
import threading
import time
from contextlib import contextmanager

import pytest
import requests
import uvicorn

GIT_AVAILABLE = shutil.which("git") is not None and all(
    shutil.which(command) for command in ("git-upload-pack", "git-receive-pack")
)

requires_git = pytest.mark.skipif(not GIT_AVAILABLE, reason="git is not installed")

GIT_TEST_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test User",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test User",
    "GIT_COMMITTER_EMAIL": "test@example.com",
    "GIT_TERMINAL_PROMPT": "0",
}

UPLOAD_PACK_PREAMBLE = b"001e# service=git-upload-pack\n0000"
RECEIVE_PACK_PREAMBLE = b"001f# service=git-receive-pack\n0000"


def find_free_port():
    """Find an available port on localhost."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@contextmanager
def run_uvicorn(app, host, port, ready_path="/health/readiness"):
    """Serve the app with uvicorn in a background thread until the block exits."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()

    base_url = f"http://{host}:{port}"
    timeout = 10
    while timeout > 0:
        try:
            if requests.get(f"{base_url}{ready_path}", timeout=1).ok:
                break
        except requests.ConnectionError:
            pass
        time.sleep(0.1)
        timeout -= 0.1
    else:
        server.should_exit = True
        raise RuntimeError("gitd server did not become ready")

    try:
        yield base_url
    finally:
        server.should_exit = True
        thread.join(timeout=5)
