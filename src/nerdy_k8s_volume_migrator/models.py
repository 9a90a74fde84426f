from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class MigratableVolume:
    name: str
    disk_uri: str
    capacity: str
    reclaim_policy: str
    storage_class: str
    claim_namespace: str
    claim_name: str


@dataclass(frozen=True)
class ControllerRef:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class RestorationAction:
    kind: str
    namespace: str
    name: str
    original_state: dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> ControllerRef:
        return ControllerRef(kind=self.kind, namespace=self.namespace, name=self.name)


@dataclass(frozen=True)
class VolumeMigrationResult:
    pv_name: str
    status: str
    stage: str
    new_pv_name: str | None = None
    claim_namespace: str | None = None
    claim_name: str | None = None
    message: str = ""


@dataclass
class MigrationRun:
    """State shared by every volume of one migration run."""

    seen_controllers: set[ControllerRef] = field(default_factory=set)
    restorations: list[RestorationAction] = field(default_factory=list)

    def is_paused(self, ref: ControllerRef) -> bool:
        return ref in self.seen_controllers

    def mark_paused(self, ref: ControllerRef) -> None:
        self.seen_controllers.add(ref)

    def register_restoration(self, action: RestorationAction) -> None:
        self.restorations.append(action)

    def drain_restorations(self) -> list[RestorationAction]:
        """Hand back queued actions last-registered first; each action is returned once."""
        pending = list(reversed(self.restorations))
        self.restorations.clear()
        return pending
