"""Version information of the driver."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

# Filled in at build time; empty means "look it up".
GIT_COMMIT = ""
VERSION = ""
# Pre-release marker such as "dev" or "rc1"; empty for a final release.
VERSION_META = ""

SOURCE_DIR_ENV = "LVMLOCAL_SOURCE_DIR"
VERSION_FILE = "VERSION"
BUILD_META_FILE = "BUILDMETA"


def _read_source_file(name: str) -> str:
    path = Path(os.environ.get(SOURCE_DIR_ENV, ".")) / name
    return path.read_text().strip()


def current() -> str:
    """Return the current version of the driver."""
    return get()


def get() -> str:
    """Return the version from VERSION, else from the VERSION file."""
    if VERSION:
        return VERSION
    try:
        return _read_source_file(VERSION_FILE)
    except OSError as exc:
        logger.error("failed to get version: %s", exc)
        return ""


def get_build_meta() -> str:
    """Return the build type prefixed with '-', or '' if unknown."""
    if VERSION_META:
        return "-" + VERSION_META
    try:
        return "-" + _read_source_file(BUILD_META_FILE)
    except OSError as exc:
        logger.error("failed to get build version: %s", exc)
        return ""


def get_git_commit() -> str:
    """Return the git commit, asking git when GIT_COMMIT is unset."""
    if GIT_COMMIT:
        return GIT_COMMIT
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--verify", "HEAD"],
            capture_output=True,
            check=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.error("failed to get git commit: %s", exc)
        return ""
    return result.stdout.strip()


def get_version_details() -> str:
    """Return the version with the short commit, prefixed with 'lvm-'."""
    return "lvm-" + verbose()


def verbose() -> str:
    """Return the version joined with the short git commit."""
    return "-".join([get(), get_git_commit()[:7]])