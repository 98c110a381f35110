import enum
import threading
from typing import Dict, Optional


class Decision(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


class DecisionCache:
    """
    Per-host allow/deny memo so the check service is hit once per host per process.
    - exact string keys, no wildcard matching
    - last write wins, no expiry, no size bound (lives as long as the process)
    - the gate and the approval UI both use it from the proxy loop; the lock keeps
      lookup/record atomic for callers on any other thread
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._decisions: Dict[str, Decision] = {}

    def lookup(self, host: str) -> Optional[Decision]:
        with self._lock:
            return self._decisions.get(host)

    def record(self, host: str, decision: Decision) -> None:
        with self._lock:
            self._decisions[host] = decision

    def snapshot(self) -> Dict[str, Decision]:
        with self._lock:
            return dict(self._decisions)

    def __contains__(self, host: str) -> bool:
        with self._lock:
            return host in self._decisions

    def __len__(self) -> int:
        with self._lock:
            return len(self._decisions)
