"""Version detection with support for development builds."""

from __future__ import annotations

import os
from importlib import metadata

# Fallback version if nothing else works
_FALLBACK_VERSION = "unknown"
_DISTRIBUTION = "scorewatch"


def get_version() -> str:
    """Get the current version string.

    Priority:
    1. BUILD_VERSION environment variable (set during CI/CD)
    2. GIT_BRANCH / GIT_SHA environment variables (Docker build args)
    3. Installed distribution metadata
    4. Fallback to "unknown"
    """
    build_version = os.environ.get("BUILD_VERSION")
    if build_version:
        return build_version.strip()

    env_branch = os.environ.get("GIT_BRANCH")
    env_sha = os.environ.get("GIT_SHA")
    if env_branch and env_sha:
        return f"{env_branch} ({env_sha})"
    if env_branch:
        return env_branch
    if env_sha:
        return f"dev ({env_sha})"

    try:
        return metadata.version(_DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return _FALLBACK_VERSION


__version__ = get_version()
