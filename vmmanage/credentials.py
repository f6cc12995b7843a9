"""
Per-server credentials for the worker and the inventory fetcher.

Stored as a JSON object {server: {"username": ..., "password": ...}} readable
only by the owner. VMMANAGE_USERNAME / VMMANAGE_PASSWORD override the file.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class CredentialStore:
    """Credential provider keyed by server name."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> Dict[str, Dict[str, str]]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open() as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"⚠️ Could not read credential store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def servers(self) -> List[str]:
        return sorted(self._load())

    def get(self, server: str) -> Optional[Tuple[str, str]]:
        """(username, password) for server, or None if unknown."""
        env_user = os.environ.get("VMMANAGE_USERNAME")
        env_password = os.environ.get("VMMANAGE_PASSWORD")
        if env_user and env_password:
            return env_user, env_password

        entry = self._load().get(server)
        if not entry or "username" not in entry or "password" not in entry:
            return None
        return entry["username"], entry["password"]

    def add(self, server: str, username: str, password: str) -> None:
        data = self._load()
        data[server] = {"username": username, "password": password}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open('w') as f:
            json.dump(data, f, indent=2)
        tmp_path.chmod(0o600)
        os.replace(tmp_path, self.path)
        logger.info(f"✅ Stored credentials for {server}")
