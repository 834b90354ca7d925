"""Provide the server."""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from os import environ as env

import yaml
from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI

from gitd import __version__
from gitd.config import ServerConfig, parse_duration
from gitd.http import GitHTTPGateway
from gitd.utils import RequestLoggingMiddleware
from gitd.version_check import MINIMUM_GIT_VERSION, check_git_version

LOGLEVEL = os.environ.get("GITD_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("gitd.server")
logging.getLogger("gitd").setLevel(LOGLEVEL)

ENV_FILE = find_dotenv(usecwd=True)
if ENV_FILE:
    load_dotenv(ENV_FILE)

# config file keys accepted under another name
CONFIG_ALIASES = {"bind": "host"}


def configure_logging(level: str, log_file: str = None) -> None:
    """Apply the log level and the optional log file to the gitd loggers."""
    gitd_logger = logging.getLogger("gitd")
    gitd_logger.setLevel(level.upper())
    if not log_file:
        return
    for handler in gitd_logger.handlers:
        if isinstance(handler, logging.FileHandler) and (
            handler.baseFilename == os.path.abspath(log_file)
        ):
            return
    try:
        handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Cannot open log file {log_file}: {e}, logging to stdout")
        return
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    gitd_logger.addHandler(handler)


def load_config_file(path: str) -> dict:
    """Load server options from a YAML file.

    Failures are logged and an empty configuration is returned, so the
    server starts with its defaults.
    """
    try:
        with open(path, encoding="utf-8") as f:
            content = yaml.safe_load(f) or {}
        if not isinstance(content, dict):
            raise ValueError("the config file must contain a mapping")
    except (OSError, yaml.YAMLError, ValueError) as e:
        logger.error(f"{e}")
        logger.warning("Error parsing config file, using default configuration")
        return {}

    options = {}
    for key, value in content.items():
        key = str(key).replace("-", "_")
        options[CONFIG_ALIASES.get(key, key)] = value
    return options


def apply_defaults(args: argparse.Namespace, parser, options: dict) -> None:
    """Set options on args where the command line left the parser default."""
    for key, value in options.items():
        if not hasattr(args, key):
            logger.warning(f"Ignoring unknown option: {key}")
            continue
        if getattr(args, key) == parser.get_default(key):
            setattr(args, key, value)


def get_args_from_env():
    """Read the server arguments from GITD_* environment variables."""
    parser = get_argparser(add_help=False)
    args = parser.parse_args([])

    # Get the argument types from the parser
    arg_types = {
        action.dest: action.type
        for action in parser._actions
        if action.type is not None
    }

    options = {}
    for arg_name in vars(args):
        env_var = "GITD_" + arg_name.upper().replace("-", "_")
        if env_var in env:
            value = env[env_var]
            if arg_name in arg_types:
                try:
                    value = arg_types[arg_name](value)
                except (ValueError, TypeError) as e:
                    logger.warning(
                        f"Failed to convert environment variable {env_var}={value} "
                        f"to type {arg_types[arg_name]}: {str(e)}"
                    )
                    continue
            options[arg_name] = value
    return options


def create_config(args: argparse.Namespace) -> ServerConfig:
    """Resolve the arguments into the server configuration."""
    parser = get_argparser(add_help=False)
    if args.from_env:
        logger.info("Loading arguments from environment variables")
        apply_defaults(args, parser, get_args_from_env())
    if args.config_file:
        apply_defaults(args, parser, load_config_file(args.config_file))

    options = {
        key: value
        for key, value in vars(args).items()
        if key in ServerConfig.model_fields and value is not None
    }
    return ServerConfig(**options)


def create_application(args) -> FastAPI:
    """Create a gitd application."""
    config = args if isinstance(args, ServerConfig) else create_config(args)
    configure_logging(config.log_level, config.log_file)
    os.makedirs(config.repos_path, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not check_git_version(
            *MINIMUM_GIT_VERSION, executable=config.git_executable
        ):
            raise RuntimeError(
                "Git >= v{}.{}.{} is required".format(*MINIMUM_GIT_VERSION)
            )
        gateway.git_ready = True
        logger.info(f"Listening on {config.host}:{config.port}...")
        logger.info(f"Serving Git repositories over HTTP from {config.repos_path}")
        yield
        logger.info("Shutting down gitd server...")

    application = FastAPI(
        title="gitd",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        description="Serve Git repositories over the smart HTTP protocol",
        version=__version__,
    )
    application.add_middleware(RequestLoggingMiddleware)
    application.state.config = config

    gateway = GitHTTPGateway(application, config)
    application.state.gateway = gateway

    if config.host in ("127.0.0.1", "localhost"):
        logger.info(
            "***Note: If you want to enable access from another host, "
            "please start with `--host=0.0.0.0`.***"
        )
    return application


def get_argparser(add_help=True):
    """Return the argument parser."""
    parser = argparse.ArgumentParser(add_help=add_help)
    parser.add_argument(
        "--host",
        type=str,
        default="localhost",
        help="host for the gitd server",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=12345,
        help="port for the gitd server",
    )
    parser.add_argument(
        "--repos-path",
        type=str,
        default=None,
        help="directory containing the repositories to serve (default: a new temporary directory)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=LOGLEVEL,
        help="log level, e.g. DEBUG, INFO, WARNING or ERROR",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="append logs to this file in addition to stdout",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=parse_duration,
        default=15.0,
        help="time to wait for in-flight requests on shutdown, e.g. 15s or 1m",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=65536,
        help="size of the chunks read from git processes",
    )
    parser.add_argument(
        "--git-executable",
        type=str,
        default="git",
        help="git executable used for the startup version check",
    )
    parser.add_argument(
        "-f",
        "--config-file",
        type=str,
        default=None,
        help="path to a YAML config file",
    )
    parser.add_argument(
        "--from-env",
        action="store_true",
        help="read the arguments from GITD_* environment variables",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


if __name__ == "__main__":
    import uvicorn

    arg_parser = get_argparser()
    opt = arg_parser.parse_args()
    app = create_application(opt)
    config = app.state.config
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        timeout_graceful_shutdown=config.shutdown_timeout,
    )
