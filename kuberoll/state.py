"""Checkpointed rollout state and its on-disk store.

The state is a JSON document written after every completed stage, so an
interrupted rollout can resume from the first stage that did not finish.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from kuberoll.errors import ConfigError, StateSchemaError
from kuberoll.models import InstanceGroupSnapshot

if TYPE_CHECKING:
    from loguru import Logger

DEFAULT_STATE_FILE = "./.kuberoll.state"
SCHEMA_VERSION = 1

STAGE_FLAGS = (
    "gather_info_done",
    "set_max_capacity_done",
    "scale_up_done",
    "wait_for_nodes_done",
    "cordon_nodes_done",
    "drain_nodes_done",
    "detach_instances_done",
    "terminate_instances_done",
    "restore_capacity_done",
)


# =============================================================================
# Deployment State
# =============================================================================


@dataclass(slots=True)
class DeploymentState:
    """Progress of one rollout.

    Each ``*_done`` flag is set only after its stage succeeded; a set flag
    means the stage is skipped on resume.
    """

    path: str = DEFAULT_STATE_FILE
    max_retries: int = 0
    sleep_between_retries: float = 15.0
    groups: list[InstanceGroupSnapshot] = field(default_factory=list)

    gather_info_done: bool = False
    set_max_capacity_done: bool = False
    scale_up_done: bool = False
    wait_for_nodes_done: bool = False
    cordon_nodes_done: bool = False
    drain_nodes_done: bool = False
    detach_instances_done: bool = False
    terminate_instances_done: bool = False
    restore_capacity_done: bool = False

    @property
    def group(self) -> InstanceGroupSnapshot:
        """The snapshot the rollout acts on. Only the first one is used."""
        if not self.groups:
            raise ConfigError("No instance group recorded in the rollout state")
        return self.groups[0]

    @group.setter
    def group(self, snapshot: InstanceGroupSnapshot) -> None:
        if self.groups:
            self.groups[0] = snapshot
        else:
            self.groups.append(snapshot)

    def completed_stages(self) -> list[str]:
        return [flag.removesuffix("_done") for flag in STAGE_FLAGS if getattr(self, flag)]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "max_retries": self.max_retries,
            "sleep_between_retries": self.sleep_between_retries,
            "groups": [g.to_dict() for g in self.groups],
        }
        data.update({flag: getattr(self, flag) for flag in STAGE_FLAGS})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: str = DEFAULT_STATE_FILE) -> DeploymentState:
        found = data.get("schema_version")
        if found != SCHEMA_VERSION:
            raise StateSchemaError(path, found, SCHEMA_VERSION)

        state = cls(
            path=path,
            max_retries=int(data.get("max_retries", 0)),
            sleep_between_retries=float(data.get("sleep_between_retries", 15.0)),
            groups=[InstanceGroupSnapshot.from_dict(g) for g in data.get("groups", [])],
        )
        for flag in STAGE_FLAGS:
            setattr(state, flag, bool(data.get(flag, False)))
        return state


# =============================================================================
# Store
# =============================================================================


class StateStore:
    """Reads and writes a DeploymentState at a fixed path.

    Writes go to a temporary file in the same directory that is then
    renamed over the target, so a crash never leaves a truncated file.
    No locking: one invocation per path at a time.
    """

    def __init__(self, path: str | Path = DEFAULT_STATE_FILE, log: Logger | None = None) -> None:
        self.path = Path(path)
        self.log = log or logger.bind(component="state")

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> DeploymentState:
        try:
            raw = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"State file {self.path} is not valid JSON: {e}", cause=e) from e
        except OSError as e:
            raise ConfigError(f"Could not read state file {self.path}: {e}", cause=e) from e
        if not isinstance(raw, dict):
            raise ConfigError(f"State file {self.path} does not contain a JSON object")
        return DeploymentState.from_dict(raw, path=str(self.path))

    def save(self, state: DeploymentState) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.to_dict(), indent=2)

        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        self.log.debug("Saved rollout state to {path}", path=str(self.path))

    def clear(self) -> None:
        """Delete the state file. A failed delete is only logged."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            self.log.warning(
                "Error deleting state file {path}: {err}. Delete it before the next rollout.",
                path=str(self.path), err=e,
            )
            return
        self.log.info("Deleted state file {path}", path=str(self.path))


def load_state(
    path: str | Path,
    ignore_existing: bool,
    max_retries: int,
    sleep_between_retries: float,
    log: Logger | None = None,
) -> tuple[DeploymentState, StateStore]:
    """Load the state at ``path`` or start a fresh one.

    The retry settings given here always win over the persisted ones.
    """
    store = StateStore(path, log=log)
    if ignore_existing or not store.exists():
        if ignore_existing and store.exists():
            store.log.info("Ignoring existing state file {path}", path=str(store.path))
        state = DeploymentState(path=str(store.path))
    else:
        store.log.info("Loading rollout state from {path}", path=str(store.path))
        state = store.load()
        completed = state.completed_stages()
        if completed:
            store.log.info("Resuming rollout; completed stages: {stages}", stages=", ".join(completed))

    state.max_retries = max_retries
    state.sleep_between_retries = sleep_between_retries
    return state, store
