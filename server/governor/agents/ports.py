"""Contracts between the governor core and the collaborators around it.

The world scan, motor skills, long-running tasks and long-term memory are
implemented elsewhere (the game-client bridge, or fakes in tests). The core
only talks to them through these shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Mapping, Protocol

from governor.agents.agent import InventorySnapshot, WorldScan

if TYPE_CHECKING:
    from governor.llm.reasoner import Decision


TaskKind = Literal["mine", "gather_wood", "farm"]
SkillFn = Callable[[dict[str, Any]], Awaitable[Any] | Any]
SkillSurface = Mapping[str, SkillFn]


@dataclass(frozen=True)
class TaskSpec:
    kind: TaskKind
    target: str | None = None
    amount: int | None = None
    types: tuple[str, ...] | None = None
    crops: tuple[str, ...] | None = None

    @classmethod
    def mine(cls, target: str, amount: int = 10) -> "TaskSpec":
        return cls(kind="mine", target=target, amount=amount)

    @classmethod
    def gather_wood(cls, amount: int = 32, types: list[str] | tuple[str, ...] | None = None) -> "TaskSpec":
        return cls(kind="gather_wood", amount=amount, types=tuple(types) if types else None)

    @classmethod
    def farm(cls, crops: list[str] | tuple[str, ...] | None = None) -> "TaskSpec":
        return cls(kind="farm", crops=tuple(crops) if crops else None)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind}
        if self.target is not None:
            payload["target"] = self.target
        if self.amount is not None:
            payload["amount"] = self.amount
        if self.types:
            payload["types"] = list(self.types)
        if self.crops:
            payload["crops"] = list(self.crops)
        return payload


class WorldProvider(Protocol):
    username: str

    def scan(self) -> WorldScan: ...

    def is_moving(self) -> bool: ...

    def is_night(self) -> bool: ...

    def vitals(self) -> tuple[float, float]: ...

    def inventory(self) -> InventorySnapshot: ...


class TaskLayer(Protocol):
    def is_busy(self) -> bool: ...

    async def update(self) -> bool: ...

    def start_task(self, spec: TaskSpec) -> None: ...

    def stop_task(self) -> None: ...


class MemoryReader(Protocol):
    def get_trust(self, username: str) -> int: ...

    def is_muted(self, username: str) -> bool: ...

    def get_topics(self, username: str, limit: int = 5) -> list[str]: ...

    def get_facts(self, username: str) -> list[str]: ...

    def get_world_facts(self, limit: int = 20) -> list[str]: ...

    def get_world_events(self, limit: int = 20) -> list[dict[str, Any]]: ...

    def get_recent_global_chat(self, limit: int = 20) -> list[dict[str, Any]]: ...

    def get_recent_interactions(self, limit: int = 20) -> list[dict[str, Any]]: ...


class ReasoningBackend(Protocol):
    def is_available(self) -> bool: ...

    async def generate_response(
        self,
        instruction: str,
        context: dict[str, Any],
        *,
        reason: str,
    ) -> "Decision | None": ...


class SpeechSink(Protocol):
    def chat(self, text: str) -> None: ...
