from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Literal

from governor.agents.agent import WorldScan
from governor.agents.ports import SpeechSink
from governor.config import BehaviorConfig


LOGGER = logging.getLogger("governor.sim.speech")

SpeechReason = Literal["direct", "mention", "danger", "event", "gift", "autonomous", "pulse", "social"]

TOP_PRIORITY_REASONS = frozenset({"direct", "mention"})
EVENT_REASONS = frozenset({"danger", "event", "gift"})
HIGH_URGENCY_REASONS = TOP_PRIORITY_REASONS | EVENT_REASONS
AUTONOMOUS_REASONS = frozenset({"autonomous", "pulse", "social"})

_NORMALIZE_RE = re.compile(r"[^0-9a-zа-яё]+")


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def normalize_text(text: str | None) -> str:
    return _NORMALIZE_RE.sub(" ", str(text or "").lower()).strip()


@dataclass
class SpeechEntry:
    text: str
    reason: str
    player: str | None
    delay: float


class SpeechThrottle:
    """Bounded-rate gate in front of the chat sink.

    Admission runs synchronously in ``enqueue``; emission happens on a single
    drain task that sleeps each entry's delay before handing it to the sink,
    so two lines are never in flight at once.
    """

    def __init__(
        self,
        config: BehaviorConfig,
        sink: SpeechSink | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.sink = sink
        self._clock = clock
        self._rng = rng or random.Random()
        self._sleep = sleep

        now = self._clock()
        self.energy = _clamp(config.speech_energy_initial)
        self._last_energy_update_at = now
        self._last_spoke_at: float | None = None
        self._last_pulse_at: float | None = None
        self._next_autonomous_at = now + self._autonomous_interval()

        self._history: Deque[tuple[str, float]] = deque()
        self._burst: Deque[float] = deque()
        self._last_by_player: dict[str, float] = {}

        self._queue: Deque[SpeechEntry] = deque()
        self._in_flight: SpeechEntry | None = None
        self._processing = False
        self._drain_task: asyncio.Task | None = None

        self._nearby_players = 0
        self._busy_probe: Callable[[], bool] | None = None

    def attach_busy_probe(self, probe: Callable[[], bool]) -> None:
        self._busy_probe = probe

    @property
    def next_autonomous_at(self) -> float:
        return self._next_autonomous_at

    @property
    def pending(self) -> int:
        return len(self._queue) + (1 if self._in_flight is not None else 0)

    def update_context(self, scan: WorldScan | None, *, is_night: bool = False) -> None:
        if scan is not None:
            self._nearby_players = sum(1 for player in scan.players if player.visible)
        self.recover_energy(is_night=is_night)

    def recover_energy(self, *, is_night: bool = False) -> None:
        now = self._clock()
        step = self.config.speech_energy_step
        elapsed = now - self._last_energy_update_at
        if elapsed < step:
            return
        steps = int(elapsed // step)
        self.energy = _clamp(self.energy + steps * self.config.speech_energy_recover_per_step)
        if is_night:
            self.energy = _clamp(self.energy - steps * self.config.speech_energy_night_penalty)
        self._last_energy_update_at += steps * step

    def mode(self) -> str:
        if self.energy <= 30:
            return "focused"
        if self.energy >= 70:
            return "chatty"
        return "neutral"

    def should_pulse(self) -> bool:
        now = self._clock()
        if now < self._next_autonomous_at:
            return False
        interval = self.config.speech_pulse_interval
        if self._last_pulse_at is not None and now - self._last_pulse_at < interval:
            return False
        self._last_pulse_at = now
        return True

    def _autonomous_interval(self) -> float:
        low = max(10.0, self.config.speech_autonomous_min_interval)
        high = max(low, self.config.speech_autonomous_max_interval)
        return self._rng.uniform(low, high)

    def _prune(self, now: float) -> None:
        history_window = self.config.auto_chat_history
        if history_window > 0:
            while self._history and now - self._history[0][1] > history_window:
                self._history.popleft()
        burst_window = self.config.speech_burst_window
        while self._burst and now - self._burst[0] > burst_window:
            self._burst.popleft()

    def _pending_entries(self) -> list[SpeechEntry]:
        entries = list(self._queue)
        if self._in_flight is not None:
            entries.append(self._in_flight)
        return entries

    def is_duplicate(self, text: str) -> bool:
        normalized = normalize_text(text)
        if not normalized:
            return True
        if self.config.auto_chat_history <= 0:
            return False
        self._prune(self._clock())
        if any(item == normalized for item, _ in self._history):
            return True
        return any(normalize_text(entry.text) == normalized for entry in self._pending_entries())

    def can_burst(self, reason: str) -> bool:
        self._prune(self._clock())
        limit = (
            self.config.speech_direct_burst_max
            if reason in TOP_PRIORITY_REASONS
            else self.config.speech_burst_max
        )
        # Lines already admitted but not yet spoken count against the window.
        return len(self._burst) + self.pending < limit

    def should_allow(self, reason: str, text: str, player: str | None = None) -> bool:
        if not text or not text.strip():
            return False
        if reason not in TOP_PRIORITY_REASONS and self.is_duplicate(text):
            return False
        if not self.can_burst(reason):
            return False

        if reason in HIGH_URGENCY_REASONS:
            return True

        now = self._clock()
        if reason in AUTONOMOUS_REASONS:
            return now >= self._next_autonomous_at

        cooldown = self.config.auto_chat_cooldown
        if cooldown > 0 and self._last_spoke_at is not None and now - self._last_spoke_at < cooldown:
            return False

        if player:
            per_player = self.config.per_player_chat_cooldown
            last = self._last_by_player.get(player)
            if per_player > 0 and last is not None and now - last < per_player:
                return False

        mode = self.mode()
        if mode == "focused":
            chance = self.config.speech_pulse_chance_focused
        elif mode == "chatty":
            chance = self.config.speech_pulse_chance_chatty
        else:
            chance = self.config.speech_pulse_chance_neutral
        if self._nearby_players == 0:
            chance *= 0.4
        elif self._nearby_players >= 3:
            chance *= 0.6
        return self._rng.random() <= chance

    def delay_for(self, reason: str) -> float:
        cfg = self.config
        if reason in EVENT_REASONS:
            return self._rng.uniform(cfg.speech_event_min_delay, cfg.speech_event_max_delay)

        if reason in TOP_PRIORITY_REASONS:
            low, high = cfg.speech_direct_min_delay, cfg.speech_direct_max_delay
            return self._rng.uniform(low, max(low, high))

        low, high = cfg.speech_min_delay, cfg.speech_max_delay
        busy = self._busy_probe() if self._busy_probe is not None else False
        if busy:
            # Do not talk over a walk or a running task.
            high = max(high, cfg.speech_busy_delay)
        return self._rng.uniform(low, max(low, high))

    def enqueue(
        self,
        text: str,
        *,
        reason: str = "autonomous",
        player: str | None = None,
        delay: float | None = None,
    ) -> bool:
        if not self.should_allow(reason, text, player):
            LOGGER.debug("Speech rejected reason=%s player=%s text=%r", reason, player, text[:80] if text else text)
            return False

        entry = SpeechEntry(
            text=str(text).strip(),
            reason=reason,
            player=player,
            delay=self.delay_for(reason) if delay is None else max(0.0, float(delay)),
        )
        if reason in HIGH_URGENCY_REASONS:
            self._queue.appendleft(entry)
        else:
            self._queue.append(entry)
        self._schedule_drain()
        return True

    def _schedule_drain(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the entry waits for the next drain().
            return
        if self._processing:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = loop.create_task(self.drain())

    async def drain(self) -> None:
        if self._processing:
            return
        self._processing = True
        try:
            while self._queue:
                entry = self._queue.popleft()
                self._in_flight = entry
                if entry.delay > 0:
                    await self._sleep(entry.delay)
                self._emit(entry)
                self._in_flight = None
        finally:
            self._in_flight = None
            self._processing = False

    def _emit(self, entry: SpeechEntry) -> None:
        if self.sink is None:
            LOGGER.warning("Speech sink missing, dropped line reason=%s", entry.reason)
            return
        try:
            self.sink.chat(entry.text)
        except Exception:
            LOGGER.exception("Speech sink failed reason=%s", entry.reason)
            return
        self.record(entry.text, player=entry.player, reason=entry.reason)

    def record(self, text: str, *, player: str | None = None, reason: str = "autonomous") -> None:
        now = self._clock()
        normalized = normalize_text(text)
        if normalized:
            self._history.append((normalized, now))
            while len(self._history) > self.config.auto_chat_history_size:
                self._history.popleft()
        self._last_spoke_at = now
        self._burst.append(now)
        self._prune(now)
        if player:
            self._last_by_player[player] = now

        if reason in AUTONOMOUS_REASONS:
            self._next_autonomous_at = now + self._autonomous_interval()

        if reason in TOP_PRIORITY_REASONS:
            decay = self.config.speech_energy_decay_on_direct
        elif reason in EVENT_REASONS:
            decay = self.config.speech_energy_decay_on_event
        else:
            decay = self.config.speech_energy_decay_on_talk
        self.energy = _clamp(self.energy - decay)

    async def close(self) -> None:
        task = self._drain_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def state_payload(self) -> dict[str, Any]:
        return {
            "energy": round(self.energy, 2),
            "mode": self.mode(),
            "pending": self.pending,
            "next_autonomous_in": round(max(0.0, self._next_autonomous_at - self._clock()), 1),
            "history_size": len(self._history),
        }
