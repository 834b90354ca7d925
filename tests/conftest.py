"""Provide common pytest fixtures."""

import subprocess

import pytest
from fastapi.testclient import TestClient

from gitd.config import ServerConfig
from gitd.server import create_application

from . import GIT_TEST_ENV, find_free_port, run_uvicorn


@pytest.fixture(name="repos_path")
def repos_path_fixture(tmp_path):
    """Create an empty repositories root."""
    path = tmp_path / "repos"
    path.mkdir()
    return str(path)


@pytest.fixture(name="config")
def config_fixture(repos_path):
    """Create a server configuration serving the repositories root."""
    return ServerConfig(host="127.0.0.1", port=find_free_port(), repos_path=repos_path)


@pytest.fixture(name="app")
def app_fixture(config):
    """Create the gitd application."""
    return create_application(config)


@pytest.fixture(name="client")
def client_fixture(app):
    """Create a test client, without running the application lifespan."""
    return TestClient(app)


@pytest.fixture(name="bare_repo")
def bare_repo_fixture(repos_path):
    """Initialize an empty bare repository named test.git."""
    subprocess.run(
        ["git", "init", "--bare", "test.git"],
        cwd=repos_path,
        env=GIT_TEST_ENV,
        check=True,
        capture_output=True,
    )
    return "test.git"


@pytest.fixture(name="git_http_server")
def git_http_server_fixture(config, app):
    """Start an actual HTTP server for Git protocol testing."""
    with run_uvicorn(app, config.host, config.port) as base_url:
        yield {"url": base_url, "repos_path": config.repos_path}
