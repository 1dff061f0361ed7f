"""
Slot registry and persisted deployment state.

Two fixed slots (A and B) alternate as active/standby. The state record is the
single source of truth for which slot serves traffic and which one, if any, can
be rolled back to. It is only ever written as the last step of a successful
deploy or rollback.
"""

import json
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from deploy.errors import StateCorrupt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    name: str
    port: int


class DeploymentState(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_port: int
    previous_port: Optional[int] = None
    previous_unit: Optional[str] = None

    @model_validator(mode="after")
    def _history_is_paired(self):
        if (self.previous_port is None) != (self.previous_unit is None):
            raise ValueError("previous_port and previous_unit must be set together")
        if self.previous_port is not None and self.previous_port == self.active_port:
            raise ValueError("previous_port cannot equal active_port")
        return self

    @property
    def can_rollback(self) -> bool:
        return self.previous_port is not None and self.previous_unit is not None


class SlotRegistry:
    def __init__(
        self,
        port_a: int = 3402,
        port_b: int = 3403,
        unit_prefix: str = "x402-gateway",
        upstream_host: str = "localhost",
        health_host: str = "localhost",
    ):
        if port_a == port_b:
            raise ValueError("slot ports must differ")
        self.slot_a = Slot("A", port_a)
        self.slot_b = Slot("B", port_b)
        self.unit_prefix = unit_prefix
        self.upstream_host = upstream_host
        self.health_host = health_host

    @classmethod
    def from_settings(cls, s) -> "SlotRegistry":
        return cls(
            port_a=s.SLOT_A_PORT,
            port_b=s.SLOT_B_PORT,
            unit_prefix=s.UNIT_PREFIX,
            upstream_host=s.UPSTREAM_HOST,
            health_host=s.HEALTH_HOST,
        )

    @property
    def slots(self) -> tuple[Slot, Slot]:
        return self.slot_a, self.slot_b

    def default_state(self) -> DeploymentState:
        return DeploymentState(active_port=self.slot_a.port)

    def slot_for_port(self, port: int) -> Slot:
        for slot in self.slots:
            if slot.port == port:
                return slot
        raise StateCorrupt(
            f"Port {port} is not a slot port "
            f"({self.slot_a.port}/{self.slot_b.port})"
        )

    def other(self, slot: Slot) -> Slot:
        return self.slot_b if slot == self.slot_a else self.slot_a

    def active_slot_for(self, state: DeploymentState) -> Slot:
        return self.slot_for_port(state.active_port)

    def standby_slot_for(self, state: DeploymentState) -> Slot:
        return self.other(self.active_slot_for(state))

    def unit_for(self, slot: Slot) -> str:
        return f"{self.unit_prefix}-{slot.name.lower()}"

    def upstream_address(self, slot: Slot) -> str:
        return f"{self.upstream_host}:{slot.port}"

    def health_address(self, slot: Slot) -> str:
        return f"http://{self.health_host}:{slot.port}"


class StateStore:
    def __init__(self, path, registry: SlotRegistry):
        self.path = Path(path)
        self.registry = registry

    def load(self) -> DeploymentState:
        """Return the persisted state, or the initial state if none was saved yet."""
        if not self.path.exists():
            logger.info(f"No state at {self.path}, starting with slot A active")
            return self.registry.default_state()
        try:
            state = DeploymentState.model_validate_json(self.path.read_text())
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            raise StateCorrupt(f"Cannot read deployment state {self.path}: {e}") from e
        # Raises StateCorrupt for ports outside the two slots
        self.registry.slot_for_port(state.active_port)
        if state.previous_port is not None:
            self.registry.slot_for_port(state.previous_port)
        return state

    def save(self, state: DeploymentState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            shutil.copy2(self.path, str(self.path) + ".bak")
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w") as f:
            json.dump(state.model_dump(), f, indent=4)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)
        logger.debug(f"State saved to {self.path}: {state.model_dump()}")
