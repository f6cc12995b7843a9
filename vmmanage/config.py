"""
Runtime settings and state directory layout.

{state_dir}/config.json may override any key of DEFAULTS.
"""

import copy
import json
import logging
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from vmmanage.protocol import Opcode

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    # open(): fixed number of fixed-interval attempts
    "open_attempts": 30,
    "open_interval": 1.0,
    # send(): poll slice, liveness is re-checked after each one
    "poll_interval": 0.5,
    "worker_poll_interval": 0.1,
    "command_timeout": 15,
    "opcode_timeouts": {
        "CREATE_SNAPSHOT": 300,
        "DELETE_SNAPSHOT": 600,
        "GET_DETAILS": 30,
    },
    # close(): end-session request, then SIGTERM, then SIGKILL
    "close_grace": 2.0,
    "terminate_grace": 1.0,
    "kill_grace": 1.0,
    "cache_max_age_days": 7,
    "log_max_age_days": 7,
    "worker_command": None,
}


def _command_list(command: Any) -> Optional[List[str]]:
    if command is None:
        return None
    if isinstance(command, str):
        return shlex.split(command)
    if isinstance(command, (list, tuple)) and all(isinstance(arg, str) for arg in command):
        return list(command)
    raise ValueError(f"worker_command must be a string or a list of strings, not {command!r}")


def default_state_dir() -> Path:
    env_dir = os.environ.get("VMMANAGE_STATE_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path.home() / ".local" / "share" / "vmmanage"


class Settings:
    """Settings for one controller instance."""

    def __init__(self, state_dir: Optional[Path] = None, **overrides: Any) -> None:
        self.state_dir = Path(state_dir).expanduser().resolve() if state_dir else default_state_dir()
        values = copy.deepcopy(DEFAULTS)
        unknown = set(overrides) - set(DEFAULTS)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        opcode_timeouts = overrides.pop("opcode_timeouts", None)
        values.update(overrides)
        if opcode_timeouts:
            values["opcode_timeouts"].update(opcode_timeouts)

        self.open_attempts = int(values["open_attempts"])
        self.open_interval = float(values["open_interval"])
        self.poll_interval = float(values["poll_interval"])
        self.worker_poll_interval = float(values["worker_poll_interval"])
        self.command_timeout = float(values["command_timeout"])
        self.opcode_timeouts = {k: float(v) for k, v in values["opcode_timeouts"].items()}
        self.close_grace = float(values["close_grace"])
        self.terminate_grace = float(values["terminate_grace"])
        self.kill_grace = float(values["kill_grace"])
        self.cache_max_age_days = int(values["cache_max_age_days"])
        self.log_max_age_days = int(values["log_max_age_days"])
        self.worker_command = _command_list(values["worker_command"])

    @classmethod
    def load(cls, state_dir: Optional[Path] = None) -> "Settings":
        """Build settings from {state_dir}/config.json if present."""
        base = Path(state_dir).expanduser().resolve() if state_dir else default_state_dir()
        config_file = base / "config.json"
        overrides: Dict[str, Any] = {}
        if config_file.exists():
            try:
                with config_file.open() as f:
                    overrides = json.load(f)
                logger.debug(f"Loaded settings from {config_file}")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"⚠️ Ignoring unreadable config file {config_file}: {e}")
                overrides = {}
            unknown = set(overrides) - set(DEFAULTS)
            for key in unknown:
                logger.warning(f"⚠️ Ignoring unknown setting in {config_file}: {key}")
                overrides.pop(key)
            try:
                _command_list(overrides.get("worker_command"))
            except ValueError as e:
                logger.warning(f"⚠️ Ignoring setting in {config_file}: {e}")
                overrides.pop("worker_command")
        return cls(base, **overrides)

    @property
    def cache_file(self) -> Path:
        return self.state_dir / "vm_cache.txt"

    @property
    def credentials_file(self) -> Path:
        return self.state_dir / "credentials.json"

    def timeout_for(self, opcode: Opcode) -> float:
        if opcode is Opcode.END_SESSION:
            return self.close_grace
        return self.opcode_timeouts.get(opcode.value, self.command_timeout)

    def worker_argv(self) -> List[str]:
        if self.worker_command:
            return list(self.worker_command)
        return [sys.executable, "-m", "vmmanage.worker"]
