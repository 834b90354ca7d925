"""Check that the installed git can serve smart HTTP requests."""

import logging
import re
import shutil
import subprocess
from typing import Optional, Tuple

logger = logging.getLogger("gitd.version_check")

MINIMUM_GIT_VERSION = (2, 2, 1)
SERVICE_COMMANDS = ("git-upload-pack", "git-receive-pack")

_VERSION_RE = re.compile(r"git version (\d+)\.(\d+)(?:\.(\d+))?")


def parse_git_version(output: str) -> Optional[Tuple[int, int, int]]:
    """Parse the output of ``git --version``."""
    match = _VERSION_RE.search(output)
    if not match:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


def get_git_version(executable: str = "git") -> Optional[Tuple[int, int, int]]:
    """Return the version of the git executable, or None if it cannot run."""
    try:
        result = subprocess.run(
            [executable, "--version"],
            capture_output=True,
            text=True,
            timeout=10,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.error(f"Failed to run {executable} --version: {e}")
        return None
    version = parse_git_version(result.stdout)
    if version is None:
        logger.error(f"Unrecognized git version output: {result.stdout.strip()}")
    return version


def check_git_version(major: int, minor: int, patch: int, executable: str = "git") -> bool:
    """Check that git is at least the given version and its services are on PATH."""
    version = get_git_version(executable)
    if version is None:
        return False
    if version < (major, minor, patch):
        logger.error(
            f"Git {'.'.join(map(str, version))} is too old, "
            f">= v{major}.{minor}.{patch} is required"
        )
        return False

    for command in SERVICE_COMMANDS:
        if shutil.which(command) is None:
            logger.error(f"{command} was not found on PATH")
            return False

    logger.info(f"Using git {'.'.join(map(str, version))}")
    return True
