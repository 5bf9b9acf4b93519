from __future__ import annotations

import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Callable, Deque

from governor.agents.agent import InventoryItem, InventorySnapshot, PlayerSighting, Vec3, WorldScan
from governor.agents.ports import SkillFn, TaskSpec
from governor.memory.store import MemoryStore

if TYPE_CHECKING:
    from governor.db.models import WorldUpdateIn
    from governor.sim.speech import SpeechThrottle


LOGGER = logging.getLogger("governor.bridge")

OUTBOX_LIMIT = 200

# Skills the game client carries out; the bridge only forwards the call.
FORWARDED_SKILLS = (
    "whisper",
    "move_to",
    "wander",
    "follow",
    "stop",
    "look_at",
    "mine_block",
    "place_block",
    "pickup_item",
    "craft_item",
    "use_furnace",
    "attack_entity",
    "equip",
    "give_item",
    "eat",
    "sleep",
    "wake",
)


class WorldBridge:
    """World view, task layer and skill surface backed by client snapshots.

    The game client pushes snapshots through ``apply_snapshot`` and polls
    ``drain_outbox`` for chat lines, skill calls and task commands.
    """

    def __init__(
        self,
        username: str,
        memory: MemoryStore,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.username = username
        self.memory = memory
        self._clock = clock
        self.speech: SpeechThrottle | None = None

        self._scan = WorldScan()
        self._inventory = InventorySnapshot()
        self._moving = False
        self._night = False
        self._task: TaskSpec | None = None
        self._task_started_at: float | None = None
        self._outbox: Deque[dict[str, Any]] = deque(maxlen=OUTBOX_LIMIT)
        self.skills: dict[str, SkillFn] = self._build_skills()

    def attach_speech(self, speech: SpeechThrottle) -> None:
        self.speech = speech

    def apply_snapshot(self, snapshot: WorldUpdateIn) -> None:
        players: list[PlayerSighting] = []
        now = self._clock()
        for player in snapshot.players:
            if player.name == self.username:
                continue
            position = Vec3(player.x, player.y, player.z) if player.x is not None else None
            players.append(
                PlayerSighting(
                    name=player.name,
                    distance=player.distance,
                    visible=player.visible,
                    position=position,
                    last_seen=now,
                )
            )
            if player.visible:
                self.memory.set_last_seen(player.name, position)

        self._scan = WorldScan(players=players, entities=list(snapshot.entities), drops=list(snapshot.drops))
        self._inventory = InventorySnapshot(
            items=[InventoryItem(name=item.name, count=item.count, food=item.food) for item in snapshot.inventory],
            health=snapshot.health,
            food=snapshot.food,
        )
        self._moving = snapshot.moving
        self._night = snapshot.night

        if snapshot.task_active is False and self._task is not None:
            LOGGER.info("Task finished type=%s", self._task.kind)
            self._task = None
            self._task_started_at = None

    # World provider

    def scan(self) -> WorldScan:
        return self._scan

    def is_moving(self) -> bool:
        return self._moving

    def is_night(self) -> bool:
        return self._night

    def vitals(self) -> tuple[float, float]:
        return self._inventory.health, self._inventory.food

    def inventory(self) -> InventorySnapshot:
        return self._inventory

    # Task layer

    def is_busy(self) -> bool:
        return self._task is not None

    async def update(self) -> bool:
        return self._task is not None

    def start_task(self, spec: TaskSpec) -> None:
        self._task = spec
        self._task_started_at = self._clock()
        self._push({"type": "task", "payload": spec.to_dict()})
        LOGGER.info("Task started: %s", spec.to_dict())

    def stop_task(self) -> None:
        if self._task is None:
            return
        self._task = None
        self._task_started_at = None
        self._push({"type": "task_stop"})

    def task_payload(self) -> dict[str, Any] | None:
        if self._task is None:
            return None
        return {"spec": self._task.to_dict(), "started_at": self._task_started_at}

    # Speech sink

    def chat(self, text: str) -> None:
        self._push({"type": "chat", "text": text})

    # Skills

    def _build_skills(self) -> dict[str, SkillFn]:
        skills: dict[str, SkillFn] = {}
        for name in FORWARDED_SKILLS:
            skills[name] = self._forwarder(name)
        skills["reply_to"] = self._reply_to
        skills["remember_fact"] = self._remember_fact
        skills["remember_world_fact"] = self._remember_world_fact
        return skills

    def _forwarder(self, name: str) -> SkillFn:
        def forward(args: dict[str, Any]) -> None:
            self._push({"type": "skill", "name": name, "args": dict(args)})

        return forward

    def _reply_to(self, args: dict[str, Any]) -> None:
        player = str(args.get("player") or args.get("player_name") or "").strip()
        text = str(args.get("text") or args.get("message") or "").strip()
        if not text:
            raise ValueError("reply_to needs text")
        if self.speech is None:
            self.chat(text)
            return
        self.speech.enqueue(text, reason="direct", player=player or None)

    def _remember_fact(self, args: dict[str, Any]) -> None:
        player = str(args.get("player_name") or args.get("player") or args.get("username") or "").strip()
        fact = str(args.get("fact") or "").strip()
        if not player or not fact:
            raise ValueError("remember_fact needs player_name and fact")
        if self.memory.add_fact(player, fact):
            LOGGER.info("Remembered fact player=%s", player)

    def _remember_world_fact(self, args: dict[str, Any]) -> None:
        fact = str(args.get("fact") or "").strip()
        if not fact:
            raise ValueError("remember_world_fact needs fact")
        self.memory.add_world_fact(fact, source="bot")

    # Outbox

    def _push(self, message: dict[str, Any]) -> None:
        if len(self._outbox) == self._outbox.maxlen:
            LOGGER.warning("Outbox full, dropping oldest message")
        self._outbox.append(message)

    def drain_outbox(self, limit: int = 50) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        while self._outbox and len(items) < limit:
            items.append(self._outbox.popleft())
        return items

    @property
    def outbox_size(self) -> int:
        return len(self._outbox)
