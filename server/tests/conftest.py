"""
Shared fixtures for governor tests.
Every service gets a fake clock so cooldowns and windows are driven explicitly.
"""
from __future__ import annotations

import os
import random
from typing import Any

import pytest

from governor.agents.agent import InventorySnapshot, PlayerSighting, WorldScan
from governor.agents.ports import TaskSpec
from governor.config import BehaviorConfig
from governor.llm.reasoner import Decision
from governor.memory.store import MemoryStore
from governor.sim.orchestrator import DecisionOrchestrator
from governor.sim.speech import SpeechThrottle


@pytest.fixture(scope="session", autouse=True)
def _isolate_env():
    """Keep the app import from reaching a real model server."""
    os.environ["LLM_ENABLED"] = "0"
    os.environ["BOT_AUTOSTART"] = "0"
    yield


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FixedRandom(random.Random):
    """random() returns a fixed value; uniform() returns one end of the range."""

    def __init__(self, value: float = 0.0, *, high: bool = False) -> None:
        super().__init__(0)
        self.value = value
        self.high = high

    def random(self) -> float:
        return self.value

    def uniform(self, a: float, b: float) -> float:
        return b if self.high else a


class FakeWorld:
    def __init__(self, username: str = "bot") -> None:
        self.username = username
        self.players: list[PlayerSighting] = []
        self.entities: list[dict[str, Any]] = []
        self.drops: list[dict[str, Any]] = []
        self.moving = False
        self.night = False
        self.snapshot = InventorySnapshot()

    def scan(self) -> WorldScan:
        return WorldScan(players=list(self.players), entities=list(self.entities), drops=list(self.drops))

    def is_moving(self) -> bool:
        return self.moving

    def is_night(self) -> bool:
        return self.night

    def vitals(self) -> tuple[float, float]:
        return self.snapshot.health, self.snapshot.food

    def inventory(self) -> InventorySnapshot:
        return self.snapshot


class FakeTaskLayer:
    def __init__(self) -> None:
        self.busy = False
        self.started: list[TaskSpec] = []
        self.stopped = 0
        self.update_error: Exception | None = None

    def is_busy(self) -> bool:
        return self.busy

    async def update(self) -> bool:
        if self.update_error is not None:
            raise self.update_error
        return self.busy

    def start_task(self, spec: TaskSpec) -> None:
        self.started.append(spec)

    def stop_task(self) -> None:
        self.stopped += 1


class FakeSink:
    def __init__(self) -> None:
        self.lines: list[str] = []

    def chat(self, text: str) -> None:
        self.lines.append(text)


class FakeBackend:
    def __init__(self) -> None:
        self.available = True
        self.decisions: list[Decision | None] = []
        self.calls: list[dict[str, Any]] = []

    def is_available(self) -> bool:
        return self.available

    async def generate_response(self, instruction: str, context: dict[str, Any], *, reason: str) -> Decision | None:
        self.calls.append({"instruction": instruction, "context": context, "reason": reason})
        if self.decisions:
            return self.decisions.pop(0)
        return None


class RecordingSkills(dict):
    """Skill surface that records every call; names in ``failing`` raise."""

    SKILL_NAMES = ("eat", "craft_item", "use_furnace", "pickup_item", "wander", "follow", "mine_block")

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failing: set[str] = set()
        for name in self.SKILL_NAMES:
            self[name] = self._make(name)

    def _make(self, name: str):
        def skill(args: dict[str, Any]) -> None:
            self.calls.append((name, dict(args)))
            if name in self.failing:
                raise RuntimeError(f"{name} broke")

        return skill

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


def player(name: str, distance: float = 5.0, visible: bool = True) -> PlayerSighting:
    return PlayerSighting(name=name, distance=distance, visible=visible)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock):
    async def sleep(seconds: float) -> None:
        clock.advance(seconds)

    return sleep


@pytest.fixture
def config() -> BehaviorConfig:
    return BehaviorConfig()


@pytest.fixture
def world() -> FakeWorld:
    return FakeWorld()


@pytest.fixture
def task_layer() -> FakeTaskLayer:
    return FakeTaskLayer()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def skills() -> RecordingSkills:
    return RecordingSkills()


@pytest.fixture
def memory(config, clock) -> MemoryStore:
    return MemoryStore(config, clock=clock)


@pytest.fixture
def speech(config, sink, clock, fake_sleep) -> SpeechThrottle:
    return SpeechThrottle(config, sink, clock=clock, rng=FixedRandom(0.0), sleep=fake_sleep)


@pytest.fixture
def make_orchestrator(config, world, task_layer, backend, memory, skills, speech, clock, fake_sleep):
    def build(**overrides: Any) -> DecisionOrchestrator:
        cfg = overrides.pop("config", config)
        options: dict[str, Any] = {
            "world": world,
            "task_layer": task_layer,
            "backend": backend,
            "memory": memory,
            "skills": skills,
            "speech": speech,
            "clock": clock,
            "sleep": fake_sleep,
        }
        options.update(overrides)
        return DecisionOrchestrator(cfg, **options)

    return build
