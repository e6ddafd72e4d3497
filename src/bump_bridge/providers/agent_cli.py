"""Agent CLI discovery and identity check.

The agent binary is located through:
- The AGENT_CLI_PATH environment override
- ``which cursor-agent`` run in the user's login shell, so PATH additions
  from shell profiles are honored
- The bare binary name as a last resort

These helpers block; async callers run them via ``asyncio.to_thread``.
"""

import logging
import os
import re
import subprocess
from functools import lru_cache
from typing import Dict, List

from bump_bridge.constants import (
    AGENT_ARGS,
    AGENT_BINARY_NAME,
    AGENT_LOOKUP_TIMEOUT,
    AGENT_PATH_ENV,
    AUTH_CHECK_TIMEOUT,
)
from bump_bridge.models.agent import AuthStatus
from bump_bridge.utils.terminal import default_shell

logger = logging.getLogger(__name__)

LOGGED_IN_PATTERN = re.compile(r"Logged in as\s+([^\s]+@[^\s]+)", re.IGNORECASE)


@lru_cache(maxsize=1)
def resolve_agent_path() -> str:
    """Absolute path of the agent binary, or its bare name if it cannot be found."""
    override = os.environ.get(AGENT_PATH_ENV)
    if override:
        logger.info(f"Using agent binary from {AGENT_PATH_ENV}: {override}")
        return override

    shell = default_shell()
    try:
        result = subprocess.run(
            [shell, "-l", "-c", f"which {AGENT_BINARY_NAME}"],
            capture_output=True,
            text=True,
            timeout=AGENT_LOOKUP_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Agent lookup through {shell} failed: {e}")
        return AGENT_BINARY_NAME

    path = result.stdout.strip().splitlines()[-1].strip() if result.stdout.strip() else ""
    if result.returncode == 0 and path:
        logger.info(f"Found agent binary at {path}")
        return path

    logger.warning(f"{AGENT_BINARY_NAME} not found in login shell PATH, falling back to bare name")
    return AGENT_BINARY_NAME


def agent_command() -> List[str]:
    return [resolve_agent_path(), *AGENT_ARGS]


def agent_env() -> Dict[str, str]:
    """Inherited environment with color output and API-key auth disabled."""
    env = dict(os.environ)
    env["FORCE_COLOR"] = "0"
    env["CURSOR_API_KEY"] = ""
    return env


def check_auth() -> AuthStatus:
    """Run ``<agent> whoami`` and report whether the user is logged in."""
    try:
        result = subprocess.run(
            [resolve_agent_path(), "whoami"],
            capture_output=True,
            text=True,
            timeout=AUTH_CHECK_TIMEOUT,
            env=agent_env(),
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Agent auth check failed: {e}")
        return AuthStatus(authenticated=False)

    if result.returncode == 0 and result.stdout:
        match = LOGGED_IN_PATTERN.search(result.stdout)
        if match:
            return AuthStatus(authenticated=True, email=match.group(1))
    return AuthStatus(authenticated=False)
