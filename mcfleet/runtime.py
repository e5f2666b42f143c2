from __future__ import annotations

from enum import Enum
from threading import Lock, RLock


class WorkloadStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    STARTING = "starting"
    STOPPING = "stopping"
    KILLING = "killing"
    DELETING = "deleting"


class RuntimeState:
    """In-memory lifecycle state; never persisted.

    - one re-entrant lock per workload id, serializing its lifecycle intents
    - the transition in flight (starting, stopping, killing, deleting)
    - a settled "stopped" recorded after a stop/kill whose Docker call failed,
      held until the next intent or an explicit reconcile
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.workload_locks: dict[str, RLock] = {}
        self.transient: dict[str, WorkloadStatus] = {}
        self.settled: dict[str, WorkloadStatus] = {}

    def lock_for(self, workload_id: str) -> RLock:
        with self.lock:
            lk = self.workload_locks.get(workload_id)
            if lk is None:
                lk = self.workload_locks[workload_id] = RLock()
            return lk

    def begin(self, workload_id: str, status: WorkloadStatus) -> None:
        with self.lock:
            self.settled.pop(workload_id, None)
            self.transient[workload_id] = status

    def end(self, workload_id: str) -> None:
        with self.lock:
            self.transient.pop(workload_id, None)

    def settle(self, workload_id: str, status: WorkloadStatus) -> None:
        with self.lock:
            self.settled[workload_id] = status

    def unsettle(self, workload_id: str) -> None:
        with self.lock:
            self.settled.pop(workload_id, None)

    def overlay(self, workload_id: str) -> WorkloadStatus | None:
        """Controller-known status that takes precedence over Docker's view."""
        with self.lock:
            return self.transient.get(workload_id) or self.settled.get(workload_id)

    def forget(self, workload_id: str) -> None:
        with self.lock:
            self.transient.pop(workload_id, None)
            self.settled.pop(workload_id, None)
