from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque

from governor.agents.agent import OperatingMode, PlayerSighting, WorldScan, mood_label
from governor.agents.ports import (
    MemoryReader,
    ReasoningBackend,
    SkillSurface,
    SpeechSink,
    TaskLayer,
    TaskSpec,
    WorldProvider,
)
from governor.config import BehaviorConfig
from governor.llm.reasoner import ActionCall, Decision
from governor.sim import templates
from governor.sim.progression import ProgressionPlanner
from governor.sim.social import FollowTracker, SocialRotation, select_social_target
from governor.sim.speech import HIGH_URGENCY_REASONS, TOP_PRIORITY_REASONS, SpeechThrottle


LOGGER = logging.getLogger("governor.sim.orchestrator")

MINING_ACTIONS = frozenset({"start_mining_task"})
WOOD_ACTIONS = frozenset({"start_gather_wood", "start_wood_task"})
FARM_ACTIONS = frozenset({"start_farm_task", "start_farming_task"})


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _as_names(value: Any) -> list[str] | None:
    if isinstance(value, str):
        names = [part.strip() for part in value.split(",") if part.strip()]
        return names or None
    if isinstance(value, (list, tuple)):
        names = [str(part).strip() for part in value if str(part).strip()]
        return names or None
    return None


class DecisionOrchestrator:
    """Owns the operating mode and the tick loop of the agent.

    Each tick either lets a foreground task run (fast path) or makes one
    idle-time decision (slow path): a progression step, a reasoning
    consultation, or cheap ambient activity such as picking up drops.
    """

    def __init__(
        self,
        config: BehaviorConfig,
        *,
        world: WorldProvider,
        task_layer: TaskLayer,
        backend: ReasoningBackend,
        memory: MemoryReader,
        skills: SkillSurface,
        speech: SpeechThrottle | None = None,
        planner: ProgressionPlanner | None = None,
        speech_sink: SpeechSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.world = world
        self.task_layer = task_layer
        self.backend = backend
        self.memory = memory
        self.skills = skills
        self.speech = speech
        self.speech_sink = speech_sink
        self._clock = clock
        self._sleep = sleep

        self.planner = planner or ProgressionPlanner(
            config,
            world=world,
            task_layer=task_layer,
            skills=skills,
            clock=clock,
        )
        self.rotation = SocialRotation()
        self.follow = FollowTracker(config, clock=clock)

        self.mode = OperatingMode.parse(config.default_mode) or OperatingMode.MANUAL
        self.running = False
        self.manual_tasks: Deque[ActionCall] = deque()
        self._loop_task: asyncio.Task | None = None
        self._sleeping = False
        self._last_query_at: float | None = None
        self._last_decision_at: float | None = None
        self._utterance_seq = 0

        if self.speech is not None:
            self.speech.attach_busy_probe(self._is_busy)

    def _is_busy(self) -> bool:
        return self.world.is_moving() or self.task_layer.is_busy()

    # Command surface

    def set_mode(self, mode: str | OperatingMode) -> bool:
        parsed = mode if isinstance(mode, OperatingMode) else OperatingMode.parse(mode)
        if parsed is None:
            return False
        self.mode = parsed
        LOGGER.info("Mode set to: %s", parsed.value)
        return True

    def push_manual_task(self, task: ActionCall | dict[str, Any]) -> ActionCall:
        action = task if isinstance(task, ActionCall) else ActionCall.model_validate(task)
        self.manual_tasks.append(action)
        return action

    async def force_consult(self) -> Decision | None:
        return await self.autonomous_step(force=True)

    # Lifecycle

    def start(self) -> asyncio.Task:
        if self._loop_task is not None and not self._loop_task.done():
            return self._loop_task
        self.running = True
        self._loop_task = asyncio.get_running_loop().create_task(self.run())
        return self._loop_task

    def stop(self) -> None:
        self.running = False
        self.task_layer.stop_task()

    async def close(self) -> None:
        self.stop()
        task = self._loop_task
        if task is None or task.done():
            return
        if self._sleeping:
            task.cancel()
        # A tick in progress, including a pending backend call, runs to completion.
        try:
            await task
        except asyncio.CancelledError:
            LOGGER.info("Decision loop stopped during idle sleep")

    async def run(self) -> None:
        self.running = True
        while self.running:
            interval = await self.tick()
            if not self.running:
                break
            self._sleeping = True
            try:
                await self._sleep(interval)
            finally:
                self._sleeping = False
        LOGGER.info("Decision loop stopped")

    async def tick(self) -> float:
        """Run one loop iteration and return how long to sleep before the next."""
        try:
            if await self.task_layer.update():
                return self.config.task_tick_interval

            if self.mode in (OperatingMode.AUTONOMOUS, OperatingMode.SURVIVAL):
                decision = await self.autonomous_step()
                if decision is None and self.mode is OperatingMode.AUTONOMOUS:
                    await self.ambient_pulse()
            elif self.manual_tasks:
                await self.execute_manual_task(self.manual_tasks.popleft())
        except Exception:
            LOGGER.exception("Decision tick failed mode=%s", self.mode.value)
        return self.config.idle_tick_interval

    # Gates

    def should_query(self, *, force: bool = False) -> bool:
        now = self._clock()
        if force:
            self._last_query_at = now
            return True
        cooldown = self.config.chat_cooldown
        if cooldown <= 0:
            return True
        if self._last_query_at is not None and now - self._last_query_at < cooldown:
            return False
        self._last_query_at = now
        return True

    def should_decide(self) -> bool:
        cooldown = self.config.autonomous_decision_cooldown
        if cooldown <= 0:
            return True
        now = self._clock()
        if self._last_decision_at is not None and now - self._last_decision_at < cooldown:
            return False
        self._last_decision_at = now
        return True

    def social_target(self, players: list[PlayerSighting]) -> PlayerSighting | None:
        return select_social_target(
            self.rotation,
            players,
            config=self.config,
            self_name=self.world.username,
            is_muted=self.memory.is_muted,
            now=self._clock(),
        )

    def mood_context(self) -> dict[str, Any]:
        health, food = self.world.vitals()
        return {"mood": mood_label(health, food), "health": health, "food": food}

    # Autonomous behaviour

    async def autonomous_step(self, *, force: bool = False) -> Decision | None:
        is_moving = self.world.is_moving()
        scan = self.world.scan()
        nearby = scan.nearby_players(self.config.social_max_distance)
        scan_context = WorldScan(players=nearby, entities=scan.entities, drops=scan.drops)
        self.follow.observe(nearby)
        if self.speech is not None:
            self.speech.update_context(scan_context, is_night=self.world.is_night())

        solo = not nearby
        if force:
            now = self._clock()
            self._last_query_at = now
            self._last_decision_at = now
        else:
            run_survival = self.mode is OperatingMode.SURVIVAL or (
                solo and self.config.autonomous_survival_enabled
            )
            if run_survival:
                acted = await self.planner.step()
                if acted and (solo or self.mode is OperatingMode.SURVIVAL):
                    return None

            if not self.should_query():
                if solo:
                    await self._idle_activity(scan_context)
                return None
            if not self.should_decide():
                return None

        social = not solo and self.mode is not OperatingMode.SURVIVAL
        target = self.social_target(nearby) if social else None

        context = self._build_context(scan_context, is_moving=is_moving)
        context["socialFocus"] = self.follow.state.to_dict()
        context["socialTarget"] = target.to_dict() if target else None

        instruction = self._build_instruction(target=target, is_moving=is_moving, solo=solo)
        decision = await self.backend.generate_response(instruction, context, reason=self.mode.value)
        if decision is None:
            return None

        if solo and decision.chat:
            decision = decision.model_copy(update={"chat": None})
        if target is not None and decision.chat:
            if target.name.lower() not in decision.chat.lower():
                decision = decision.model_copy(update={"chat": f"{target.name}, {decision.chat}"})

        spoken = await self.execute_decision(
            decision,
            reason="autonomous",
            player=target.name if target else None,
        )
        # A line the throttle refused does not use up this player's turn.
        if target is not None and spoken:
            self.rotation.advance(target.name, self._clock())

        await self._pickup_drops(scan_context)
        return decision

    async def ambient_pulse(self) -> str | None:
        """Emit an occasional unprompted line to the nearest player; return it if accepted."""
        if self.speech is None or self._is_busy():
            return None
        scan = self.world.scan()
        candidates = [
            sighting
            for sighting in scan.nearby_players(self.config.social_max_distance)
            if sighting.name != self.world.username and not self.memory.is_muted(sighting.name)
        ]
        if not candidates or not self.speech.should_pulse():
            return None

        target = min(candidates, key=lambda sighting: sighting.distance)
        facts = self.memory.get_facts(target.name)
        context = {
            "nearbyPlayer": target.name,
            "playerFact": facts[-1] if facts else None,
            "isNight": self.world.is_night(),
            "botMood": self.mood_context(),
        }
        decision = await self.backend.generate_response(templates.PULSE_INSTRUCTION, context, reason="pulse")
        if decision is None or not decision.chat:
            return None
        if not self._say(decision.chat, reason="pulse"):
            return None
        return decision.chat

    async def _idle_activity(self, scan: WorldScan) -> None:
        await self._pickup_drops(scan)
        if self._is_busy():
            return
        await self._call_skill("wander", {"range": self.config.wander_range})

    async def _pickup_drops(self, scan: WorldScan) -> None:
        if not self.config.auto_pickup_drops or not scan.drops:
            return
        if self._is_busy():
            return
        await self._call_skill("pickup_item", {"radius": self.config.scan_radius_drops})

    async def _call_skill(self, name: str, args: dict[str, Any]) -> bool:
        skill = self.skills.get(name)
        if skill is None:
            LOGGER.debug("Skill %s is not available", name)
            return False
        result = skill(args)
        if inspect.isawaitable(result):
            await result
        return True

    def _build_context(
        self,
        scan: WorldScan,
        *,
        is_moving: bool,
        sender: str | None = None,
    ) -> dict[str, Any]:
        names = [player.name for player in scan.players if player.name]
        if sender and sender not in names:
            names.append(sender)

        facts: dict[str, list[str]] = {}
        topics: dict[str, list[str]] = {}
        for name in names:
            player_facts = self.memory.get_facts(name)
            if player_facts:
                facts[name] = player_facts
            player_topics = self.memory.get_topics(name, self.config.topics_per_player)
            if player_topics:
                topics[name] = player_topics

        history = self.config.max_chat_history
        world_limit = self.config.world_context_limit
        inventory = self.world.inventory()

        context = scan.to_context()
        context.update(
            {
                "isMoving": is_moving,
                "inventory": [{"name": item.name, "count": item.count} for item in inventory.items],
                "memory": facts,
                "recentChat": self.memory.get_recent_interactions(history),
                "globalChat": self.memory.get_recent_global_chat(history),
                "worldFacts": self.memory.get_world_facts(world_limit),
                "worldEvents": self.memory.get_world_events(world_limit),
                "playerTrust": {name: self.memory.get_trust(name) for name in names},
                "conversationTopics": topics,
                "botMood": self.mood_context(),
            }
        )
        return context

    def _build_instruction(self, *, target: PlayerSighting | None, is_moving: bool, solo: bool) -> str:
        if self.mode is OperatingMode.SURVIVAL:
            return templates.SURVIVAL_INSTRUCTION

        instruction = templates.SOCIAL_INSTRUCTION
        if target is not None:
            instruction += templates.SOCIAL_TARGET_INSTRUCTION.format(name=target.name)
        if is_moving:
            instruction += templates.MOVING_INSTRUCTION
        if not solo:
            instruction += templates.PLAYER_NEAR_INSTRUCTION
        return instruction

    # Chat-triggered consultation

    async def process_user_request(
        self,
        username: str,
        message: str,
        *,
        reason: str | None = None,
        passive: bool = False,
        force: bool = False,
    ) -> Decision | None:
        effective_reason = reason or ("social" if passive else "direct")
        if passive and self.memory.is_muted(username):
            return None
        forced = force or effective_reason in TOP_PRIORITY_REASONS
        if not self.should_query(force=forced):
            return None

        scan = self.world.scan()
        self.follow.observe(scan.players)
        if self.speech is not None:
            self.speech.update_context(scan, is_night=self.world.is_night())

        context = self._build_context(scan, is_moving=self.world.is_moving(), sender=username)
        context["lastSender"] = username
        instruction = templates.USER_REQUEST_INSTRUCTION.format(username=username, message=message)
        if passive:
            instruction += templates.PASSIVE_REQUEST_INSTRUCTION

        decision = await self.backend.generate_response(instruction, context, reason=effective_reason)
        if decision is not None:
            spoken = await self.execute_decision(decision, reason=effective_reason, player=username)
            if not spoken and effective_reason in TOP_PRIORITY_REASONS:
                self._say(self._render("ack"), reason=effective_reason, player=username)
            return decision

        if effective_reason in TOP_PRIORITY_REASONS:
            kind = "not_understood" if self.backend.is_available() else "backend_down"
            self._say(self._render(kind), reason="direct", player=username)
        return None

    # Dispatch

    async def execute_manual_task(self, action: ActionCall) -> None:
        LOGGER.info("Executing manual task: %s", action.name)
        await self.execute_decision(Decision(actions=[action]), reason="direct")

    async def execute_decision(
        self,
        decision: Decision,
        *,
        reason: str = "autonomous",
        player: str | None = None,
    ) -> str | None:
        """Speak and act on a decision; return the chat line only if it was accepted."""
        if decision.thought:
            LOGGER.info("Think: %s", decision.thought)

        spoken: str | None = None
        if decision.chat:
            if self._say(decision.chat, reason=reason, player=player):
                spoken = decision.chat

        for action in decision.actions:
            await self._dispatch_action(action, reason=reason, player=player)
        return spoken

    async def _dispatch_action(self, action: ActionCall, *, reason: str, player: str | None) -> None:
        name = action.name
        args = dict(action.args)
        LOGGER.info("Action: %s args=%s", name, args)

        if name in MINING_ACTIONS:
            target = args.get("name") or args.get("target") or args.get("target_block")
            if not target:
                LOGGER.warning("start_mining_task missing target")
                return
            self.task_layer.start_task(TaskSpec.mine(str(target), _as_int(args.get("count"), 10)))
            return
        if name in WOOD_ACTIONS:
            types = args.get("types") or args.get("wood_types") or args.get("woods")
            self.task_layer.start_task(TaskSpec.gather_wood(_as_int(args.get("count"), 32), _as_names(types)))
            return
        if name in FARM_ACTIONS:
            crops = args.get("crops") or args.get("crop_types")
            self.task_layer.start_task(TaskSpec.farm(_as_names(crops)))
            return
        if name == "follow":
            await self._follow(args, reason=reason, player=player)
            return
        if name == "say":
            text = str(args.get("text") or args.get("message") or "").strip()
            if not text:
                LOGGER.warning("say missing text")
                return
            self._say(text, reason=reason, player=player)
            return

        if name not in self.skills:
            LOGGER.warning("Unknown skill: %s", name)
            return
        await self._run_skill(name, args, reason=reason, player=player)

    async def _run_skill(self, name: str, args: dict[str, Any], *, reason: str, player: str | None) -> bool:
        try:
            await self._call_skill(name, args)
        except Exception:
            LOGGER.exception("Skill %s failed", name)
            apology_reason = reason if reason in HIGH_URGENCY_REASONS else "event"
            self._say(self._render("action_failed", action=name), reason=apology_reason, player=player)
            return False
        return True

    async def _follow(self, args: dict[str, Any], *, reason: str, player: str | None) -> None:
        if reason not in TOP_PRIORITY_REASONS and not self.config.autonomous_follow_enabled:
            LOGGER.info("Follow disabled for reason=%s", reason)
            return
        target = self.follow.resolve_target(args, self.memory.is_muted)
        if not target:
            LOGGER.info("Follow skipped: no target")
            return
        if not self.follow.can_follow(target, is_moving=self.world.is_moving()):
            LOGGER.info("Follow suppressed target=%s", target)
            return
        if "follow" not in self.skills:
            LOGGER.warning("Unknown skill: follow")
            return
        if await self._run_skill("follow", {**args, "player": target}, reason=reason, player=player):
            self.follow.mark(target)

    def _render(self, kind: str, **kwargs: Any) -> str:
        self._utterance_seq += 1
        return templates.render(kind, self._utterance_seq, **kwargs)

    def _say(self, text: str, *, reason: str, player: str | None = None) -> bool:
        if self.speech is not None:
            return self.speech.enqueue(text, reason=reason, player=player)
        if self.speech_sink is not None:
            self.speech_sink.chat(text)
            return True
        LOGGER.warning("No speech output attached, dropped line reason=%s", reason)
        return False

    def state_payload(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "running": self.running,
            "manual_tasks": len(self.manual_tasks),
            "busy": self.task_layer.is_busy(),
            "follow": self.follow.state.to_dict(),
            "rotation": self.rotation.to_dict(),
            "last_progression_step": self.planner.last_step.describe() if self.planner.last_step else None,
            "speech": self.speech.state_payload() if self.speech is not None else None,
        }
