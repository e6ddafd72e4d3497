"""Terminal utility functions."""

import itertools
import os
import platform
import re
from pathlib import Path
from typing import Dict, Iterator, Optional

from bump_bridge.constants import TERMINAL_ID_PREFIX, TERMINALS_DIR

ANSI_PATTERN = re.compile(
    r"[\u001b\u009b][\[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]"
)
OSC_PATTERN = re.compile(r"\x1b\][0-9]*;[^\x07\x1b]*(?:\x07|\x1b\\)")
TITLE_PATTERN = re.compile(r"\x1b\][02];(.+?)(?:\x07|\x1b\\)")


def terminal_id_sequence(prefix: str = TERMINAL_ID_PREFIX) -> Iterator[str]:
    """Yield term-1, term-2, ... ; ids are never repeated by one sequence."""
    return (f"{prefix}-{n}" for n in itertools.count(1))


def get_terminal_log_path(terminal_id: str, log_dir: Optional[Path] = None) -> Path:
    """Get the log file path for a terminal."""
    return (log_dir or TERMINALS_DIR) / f"{terminal_id}.log"


def strip_ansi(text: str) -> str:
    """Remove OSC sequences and CSI/escape codes from terminal output."""
    return ANSI_PATTERN.sub("", OSC_PATTERN.sub("", text))


def extract_title(text: str) -> Optional[str]:
    """Return the last window title set by an OSC 0/2 sequence in ``text``."""
    matches = TITLE_PATTERN.findall(text)
    return matches[-1] if matches else None


def default_shell() -> str:
    override = os.environ.get("BUMP_SHELL")
    if override:
        return override
    if platform.system() == "Darwin":
        return "/bin/zsh"
    return "/bin/bash"


def shell_environment(shell: str) -> Dict[str, str]:
    """Environment for a new terminal shell."""
    home = str(Path.home())
    env = {
        "HOME": home,
        "SHELL": shell,
        "TERM": "xterm-256color",
        "COLORTERM": "truecolor",
        "PATH": os.environ.get("PATH") or "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin",
        "LANG": os.environ.get("LANG") or "en_US.UTF-8",
    }
    for name in ("USER", "LOGNAME"):
        if os.environ.get(name):
            env[name] = os.environ[name]
    return env
