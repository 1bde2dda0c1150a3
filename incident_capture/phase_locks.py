# incident_capture/phase_locks.py

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Tuple


class PhaseLockRegistry:
    """
    Process-local exclusive locks keyed by (incident_id, phase).

    - Guards only the short read-check-write persistence steps.
    - Never held across an AI call or a backoff sleep.
    - The unique constraints on questions/answers are the cross-process backstop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # (incident_id, phase) -> [lock, waiters_or_holders]
        self._locks: Dict[Tuple[str, str], list] = {}

    @contextmanager
    def hold(self, incident_id: str, phase: str) -> Iterator[None]:
        key = (str(incident_id), str(phase))
        with self._lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        try:
            with lock:
                yield
        finally:
            with self._lock:
                entry[1] -= 1

    def snapshot(self) -> List[Tuple[str, str]]:
        """
        Return a copy of all keys currently tracked.
        """
        with self._lock:
            return list(self._locks.keys())

    def sweep_idle(self) -> int:
        """
        Drop entries nobody holds or waits on. Returns how many were removed.
        """
        with self._lock:
            idle = [k for k, (_, users) in self._locks.items() if users == 0]
            for k in idle:
                del self._locks[k]
        return len(idle)
