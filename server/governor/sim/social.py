from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from governor.agents.agent import PlayerSighting
from governor.config import BehaviorConfig


FOLLOW_NAME_KEYS = ("targetName", "entity_name", "entity", "name", "player")
PLACEHOLDER_TARGETS = frozenset({"player"})


@dataclass
class FollowState:
    target: str | None = None
    since: float = 0.0
    stick_until: float = 0.0
    last_attempt_at: float | None = None

    def is_sticky(self, now: float) -> bool:
        return self.target is not None and now < self.stick_until

    def to_dict(self) -> dict[str, Any] | None:
        if self.target is None:
            return None
        return {"name": self.target, "since": self.since, "stickUntil": self.stick_until}


@dataclass
class SocialRotation:
    last_round_at: float | None = None
    cursor: int = 0
    last_spoke_at: dict[str, float] = field(default_factory=dict)

    def round_ready(self, now: float, interval: float) -> bool:
        if interval <= 0:
            return False
        return self.last_round_at is None or now - self.last_round_at >= interval

    def can_address(self, name: str, now: float, cooldown: float) -> bool:
        if cooldown <= 0:
            return True
        last = self.last_spoke_at.get(name)
        return last is None or now - last >= cooldown

    def pick(self, eligible: list[PlayerSighting]) -> PlayerSighting | None:
        if not eligible:
            return None
        ordered = sorted(eligible, key=lambda player: player.name)
        return ordered[self.cursor % len(ordered)]

    def advance(self, name: str, now: float) -> None:
        self.last_round_at = now
        self.cursor += 1
        self.last_spoke_at[name] = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "cursor": self.cursor,
            "last_round_at": self.last_round_at,
            "players": dict(self.last_spoke_at),
        }


def select_social_target(
    rotation: SocialRotation,
    players: list[PlayerSighting],
    *,
    config: BehaviorConfig,
    self_name: str,
    is_muted: Callable[[str], bool],
    now: float,
) -> PlayerSighting | None:
    if not rotation.round_ready(now, config.social_round_interval):
        return None

    eligible = [
        player
        for player in players
        if player.name
        and player.name != self_name
        and player.visible
        and player.distance <= config.social_max_distance
        and not is_muted(player.name)
        and rotation.can_address(player.name, now, config.per_player_chat_cooldown)
    ]
    return rotation.pick(eligible)


class FollowTracker:
    """Admission control for follow requests with a sticky current target."""

    def __init__(self, config: BehaviorConfig, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self._clock = clock
        self.state = FollowState()
        self._visible_players: list[PlayerSighting] = []

    def observe(self, players: list[PlayerSighting]) -> None:
        self._visible_players = [player for player in players if player.visible]

    def is_visible(self, name: str | None) -> bool:
        if not name:
            return False
        return any(player.name == name for player in self._visible_players)

    def resolve_target(self, args: dict[str, Any], is_muted: Callable[[str], bool]) -> str | None:
        for key in FOLLOW_NAME_KEYS:
            value = args.get(key)
            if isinstance(value, str) and value.strip():
                if value.strip().lower() not in PLACEHOLDER_TARGETS:
                    return value.strip()
                break

        candidates = [player for player in self._visible_players if player.name and not is_muted(player.name)]
        if not candidates:
            return None
        candidates.sort(key=lambda player: player.distance)
        return candidates[0].name

    def can_follow(self, name: str, *, is_moving: bool) -> bool:
        now = self._clock()
        state = self.state
        cooldown = self.config.follow_global_cooldown
        if cooldown > 0 and state.last_attempt_at is not None and now - state.last_attempt_at < cooldown:
            return False
        if state.target == name:
            return True
        if state.target and state.target != name:
            if state.is_sticky(now) and self.is_visible(state.target):
                return False
            if is_moving:
                return False
        return True

    def mark(self, name: str | None) -> None:
        now = self._clock()
        self.state.last_attempt_at = now
        if name:
            self.state.target = name
            self.state.since = now
            self.state.stick_until = now + self.config.follow_stick
