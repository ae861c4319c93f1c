"""Per-target exclusivity for healing executions."""

from __future__ import annotations

import threading

from loguru import logger


class TargetArena:
    """Holds at most one active healing execution per target.

    Claims never block: a second claim for an occupied target fails
    immediately and reports the current holder.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._owners: dict[str, int | None] = {}

    def try_claim(self, target_id: str, execution_id: int | None = None) -> bool:
        """Claim a target. Returns False if it is already claimed."""
        with self._lock:
            if target_id in self._owners:
                return False
            self._owners[target_id] = execution_id
        logger.debug(f"Target {target_id} claimed by execution {execution_id}")
        return True

    def assign(self, target_id: str, execution_id: int) -> None:
        """Attach the execution id to a claim made before the row existed."""
        with self._lock:
            if target_id in self._owners:
                self._owners[target_id] = execution_id

    def release(self, target_id: str, execution_id: int | None = None) -> bool:
        """Release a claim, only if held by the given execution when one is given."""
        with self._lock:
            if target_id not in self._owners:
                return False
            if execution_id is not None and self._owners[target_id] not in (None, execution_id):
                return False
            del self._owners[target_id]
        logger.debug(f"Target {target_id} released")
        return True

    def holder(self, target_id: str) -> int | None:
        with self._lock:
            return self._owners.get(target_id)
