from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

from governor.agents.agent import InventorySnapshot
from governor.agents.ports import SkillSurface, TaskLayer, TaskSpec, WorldProvider
from governor.config import BehaviorConfig


LOGGER = logging.getLogger("governor.sim.progression")

WOOD_SUFFIXES = ("_log", "_wood", "_stem", "_hyphae")
PLANK_SUFFIXES = ("_planks",)
SEED_SUFFIXES = ("_seeds",)

CRITICAL_HEALTH = 10
CRITICAL_FOOD = 12
MODERATE_FOOD = 14
WOOD_THRESHOLD = 12
WOOD_BATCH = 24
PICKAXE_PLANKS = 3
STONE_NEEDED = 3
STONE_BATCH = 12
IRON_NEEDED = 6
IRON_BATCH = 6
IRON_PICKAXE_INGOTS = 3
SMELT_BATCH = 8


@dataclass(frozen=True)
class ProgressionStep:
    kind: Literal["eat", "craft", "smelt", "task"]
    item: str | None = None
    count: int = 1
    task: TaskSpec | None = None

    def describe(self) -> str:
        if self.kind == "task" and self.task is not None:
            spec = self.task
            if spec.kind == "mine":
                return f"start mine({spec.target},{spec.amount})"
            if spec.kind == "gather_wood":
                return f"start gather_wood({spec.amount})"
            return "start farm"
        if self.kind == "smelt":
            return f"smelt {self.item} x{self.count}"
        return f"{self.kind} {self.item}"


def wood_count(snapshot: InventorySnapshot) -> int:
    return snapshot.count_by_suffix(WOOD_SUFFIXES) + snapshot.count("bamboo_block")


def plank_count(snapshot: InventorySnapshot) -> int:
    return snapshot.count_by_suffix(PLANK_SUFFIXES)


def plan_next_step(snapshot: InventorySnapshot) -> ProgressionStep | None:
    if snapshot.health <= CRITICAL_HEALTH or snapshot.food <= CRITICAL_FOOD:
        food_item = snapshot.best_food()
        if food_item is not None:
            return ProgressionStep(kind="eat", item=food_item.name)

    logs = wood_count(snapshot)
    planks = plank_count(snapshot)
    has_table = snapshot.has("crafting_table")
    has_wood_pick = snapshot.has("wooden_pickaxe")
    has_stone_pick = snapshot.has("stone_pickaxe")
    has_iron_pick = snapshot.has("iron_pickaxe")

    if not has_table and (logs > 0 or planks > 0):
        return ProgressionStep(kind="craft", item="crafting_table")

    if logs + planks < WOOD_THRESHOLD:
        return ProgressionStep(kind="task", task=TaskSpec.gather_wood(WOOD_BATCH))

    if not has_wood_pick and planks >= PICKAXE_PLANKS:
        return ProgressionStep(kind="craft", item="wooden_pickaxe")

    if has_wood_pick and not has_stone_pick:
        if snapshot.count("cobblestone") < STONE_NEEDED:
            return ProgressionStep(kind="task", task=TaskSpec.mine("stone", STONE_BATCH))
        return ProgressionStep(kind="craft", item="stone_pickaxe")

    if has_stone_pick and not has_iron_pick:
        raw_iron = snapshot.count("raw_iron")
        iron_ore = snapshot.count("iron_ore")
        ingots = snapshot.count("iron_ingot")
        if raw_iron + iron_ore + ingots < IRON_NEEDED:
            return ProgressionStep(kind="task", task=TaskSpec.mine("iron_ore", IRON_BATCH))
        if raw_iron > 0:
            return ProgressionStep(kind="smelt", item="raw_iron", count=min(raw_iron, SMELT_BATCH))
        if ingots >= IRON_PICKAXE_INGOTS:
            return ProgressionStep(kind="craft", item="iron_pickaxe")

    if snapshot.food < MODERATE_FOOD and snapshot.count_by_suffix(SEED_SUFFIXES) > 0:
        return ProgressionStep(kind="task", task=TaskSpec.farm())

    return None


class ProgressionPlanner:
    """Greedy survival ladder used when the reasoning backend is not consulted.

    ``plan`` is pure over an inventory snapshot. ``step`` adds the cooldowns,
    reads the live inventory and carries out at most one step.
    """

    def __init__(
        self,
        config: BehaviorConfig,
        *,
        world: WorldProvider,
        task_layer: TaskLayer,
        skills: SkillSurface,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.world = world
        self.task_layer = task_layer
        self.skills = skills
        self._clock = clock
        self._last_step_at: float | None = None
        self._last_action_at: float | None = None
        self.last_step: ProgressionStep | None = None

    def plan(self, snapshot: InventorySnapshot) -> ProgressionStep | None:
        return plan_next_step(snapshot)

    def should_step(self) -> bool:
        now = self._clock()
        cooldown = self.config.survival_step_cooldown
        if self._last_step_at is not None and now - self._last_step_at < cooldown:
            return False
        self._last_step_at = now
        return True

    def can_act(self) -> bool:
        if self._last_action_at is None:
            return True
        return self._clock() - self._last_action_at >= self.config.survival_action_cooldown

    def mark_act(self) -> None:
        self._last_action_at = self._clock()

    def reset_cooldowns(self) -> None:
        self._last_step_at = None
        self._last_action_at = None

    async def step(self) -> bool:
        if not self.should_step():
            return False
        if not self.can_act():
            return False
        if self.task_layer.is_busy():
            return False

        step = self.plan(self.world.inventory())
        if step is None:
            return False

        await self._execute(step)
        self.mark_act()
        self.last_step = step
        LOGGER.info("Progression step: %s", step.describe())
        return True

    async def _execute(self, step: ProgressionStep) -> None:
        if step.kind == "task" and step.task is not None:
            self.task_layer.start_task(step.task)
            return
        if step.kind == "eat":
            await self._call_skill("eat", {"name": step.item})
            return
        if step.kind == "smelt":
            await self._call_skill("use_furnace", {"input_name": step.item, "count": step.count})
            return
        await self._call_skill("craft_item", {"name": step.item, "count": step.count})

    async def _call_skill(self, name: str, args: dict[str, Any]) -> None:
        skill = self.skills.get(name)
        if skill is None:
            LOGGER.warning("Progression skill missing: %s", name)
            return
        result = skill(args)
        if inspect.isawaitable(result):
            await result
