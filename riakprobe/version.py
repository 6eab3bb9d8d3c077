from __future__ import annotations

import os
import subprocess
from importlib import metadata

_DIST_NAME = "riak-probe"


def _installed_version() -> str | None:
    try:
        return metadata.version(_DIST_NAME)
    except metadata.PackageNotFoundError:
        return None


def get_version() -> str:
    env_override = os.environ.get('RIAK_PROBE_VERSION')
    if env_override:
        return env_override
    installed = _installed_version()
    if installed:
        return installed
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--always', '--dirty'],
            check=True,
            capture_output=True,
            text=True,
        )
        version = result.stdout.strip()
        if version:
            return version
    except Exception:
        pass
    return 'unknown'


def user_agent() -> str:
    return f"{_DIST_NAME}/{get_version()}"
