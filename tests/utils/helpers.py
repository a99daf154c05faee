"""
Helpers for building on-disk test state.
"""

import json
import shlex
import sys
from pathlib import Path

FIXTURE_SERVER = Path(__file__).parent.parent / "fixtures" / "echo_server.py"


def fixture_run_command(*extra: str) -> str:
    """Shell-style run command that starts the fixture server."""
    return shlex.join([sys.executable, str(FIXTURE_SERVER), *extra])


def write_configuration(data_dir: Path, entries: dict, installed: bool = True) -> Path:
    """Write a configuration.json holding ``entries``."""
    data_dir.mkdir(parents=True, exist_ok=True)
    path = data_dir / "configuration.json"
    document = {"installed": entries} if installed else dict(entries)
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def write_process_state(data_dir: Path, state: dict) -> Path:
    """Write a processes.json process-supervisor state file."""
    data_dir.mkdir(parents=True, exist_ok=True)
    path = data_dir / "processes.json"
    path.write_text(json.dumps(state), encoding="utf-8")
    return path
