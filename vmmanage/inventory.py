"""
Locally cached VM inventory.

One record per line: name|status|location|group, where status is the power
state, location the hosting ESXi host and group the vCenter server.
"""

import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from vmmanage.credentials import CredentialStore
from vmmanage.session import Target

logger = logging.getLogger(__name__)

DELIMITER = "|"


class Record(NamedTuple):
    name: str
    status: str
    location: str
    group: str

    @property
    def target(self) -> Target:
        return Target(self.name, self.group)

    def to_line(self) -> str:
        return DELIMITER.join(self)

    @classmethod
    def from_line(cls, line: str) -> Optional["Record"]:
        """Parse a cache line; anything but four non-empty fields yields None."""
        fields = line.rstrip("\r\n").split(DELIMITER)
        if len(fields) != 4 or not all(field.strip() for field in fields):
            return None
        return cls(*(field.strip() for field in fields))


Fetcher = Callable[[str, str, str], List[Record]]


class RecordStore:
    """Flat record cache with substring search."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def records(self) -> List[Record]:
        if not self.path.exists():
            return []
        records = []
        with self.path.open(encoding='utf-8', errors='replace') as f:
            for number, line in enumerate(f, 1):
                if not line.strip():
                    continue
                record = Record.from_line(line)
                if record is None:
                    logger.debug(f"Skipping malformed cache line {number}: {line.rstrip()}")
                    continue
                records.append(record)
        return records

    def search(self, pattern: str) -> List[Record]:
        """Records whose name contains pattern, case-insensitively."""
        needle = pattern.lower()
        return [record for record in self.records() if needle in record.name.lower()]

    def find(self, name: str) -> List[Record]:
        return [record for record in self.records() if record.name == name]

    def age_days(self) -> int:
        if not self.path.exists():
            return 999
        return int((time.time() - self.path.stat().st_mtime) // 86400)

    def info(self) -> Dict[str, object]:
        if not self.path.exists():
            return {"exists": False, "age_days": 999, "count": 0, "groups": []}
        records = self.records()
        return {
            "exists": True,
            "age_days": self.age_days(),
            "count": len(records),
            "groups": sorted({record.group for record in records}),
        }

    def write(self, records: Iterable[Record]) -> int:
        """Replace the cache atomically; returns the number of records written."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        count = 0
        with tmp_path.open('w', encoding='utf-8') as f:
            for record in records:
                if any(DELIMITER in field or "\n" in field for field in record):
                    logger.warning(f"⚠️ Skipping record with reserved characters: {record.name!r}")
                    continue
                f.write(record.to_line() + "\n")
                count += 1
        os.replace(tmp_path, self.path)
        return count

    def rebuild(self, credentials: CredentialStore, fetcher: Fetcher,
                servers: Optional[List[str]] = None) -> int:
        """
        Re-enumerate every server and replace the cache.

        Servers without credentials or failing to enumerate are skipped with
        an error log; the cache is only replaced if at least one succeeded.
        """
        servers = servers if servers is not None else credentials.servers()
        if not servers:
            raise ValueError("No servers configured - add credentials first")

        records: List[Record] = []
        succeeded = 0
        for server in servers:
            creds = credentials.get(server)
            if creds is None:
                logger.error(f"❌ No credentials found for {server}")
                continue
            logger.info(f"🔧 Fetching VMs from {server}...")
            try:
                records.extend(fetcher(server, *creds))
                succeeded += 1
            except Exception as e:
                logger.error(f"❌ Failed to fetch VMs from {server}: {e}")

        if not succeeded:
            raise RuntimeError("No server could be enumerated; cache left unchanged")

        count = self.write(records)
        logger.info(f"✅ VM cache rebuilt: {count} VMs from {succeeded}/{len(servers)} servers")
        return count
