from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque

from governor.agents.agent import Vec3
from governor.config import BehaviorConfig


LOGGER = logging.getLogger("governor.memory.store")

TRUST_MIN = -10
TRUST_MAX = 10
INTERACTIONS_PER_PLAYER = 50
WORLD_LOG_LIMIT = 80


def _normalize_fact(text: str) -> str:
    return " ".join(str(text or "").strip().lower().split())


@dataclass
class TopicEntry:
    text: str
    normalized: str
    timestamp: float


@dataclass
class PlayerRecord:
    facts: list[str] = field(default_factory=list)
    interactions: Deque[dict[str, Any]] = field(default_factory=lambda: deque(maxlen=INTERACTIONS_PER_PLAYER))
    topics: list[TopicEntry] = field(default_factory=list)
    trust: int = 0
    last_seen: float | None = None
    last_position: Vec3 | None = None
    mute_until: float | None = None


class MemoryStore:
    """Process-local player and world memory.

    Durable persistence lives with the host process; this keeps the same
    shapes the prompt context needs (trust, mutes, topics, facts, chat).
    """

    def __init__(self, config: BehaviorConfig, *, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self._clock = clock
        self._players: dict[str, PlayerRecord] = {}
        self._global_chat: Deque[dict[str, Any]] = deque(maxlen=WORLD_LOG_LIMIT)
        self._world_facts: Deque[dict[str, Any]] = deque(maxlen=WORLD_LOG_LIMIT)
        self._world_events: Deque[dict[str, Any]] = deque(maxlen=WORLD_LOG_LIMIT)

    def _player(self, username: str) -> PlayerRecord:
        record = self._players.get(username)
        if record is None:
            record = PlayerRecord()
            self._players[username] = record
        return record

    def known_players(self) -> list[str]:
        return sorted(self._players.keys())

    def adjust_trust(self, username: str, delta: int) -> int:
        record = self._player(username)
        record.trust = max(TRUST_MIN, min(TRUST_MAX, record.trust + int(delta)))
        return record.trust

    def get_trust(self, username: str) -> int:
        return self._player(username).trust

    def add_fact(self, username: str, fact: str) -> bool:
        clean = str(fact or "").strip()
        if not clean:
            return False
        record = self._player(username)
        normalized = _normalize_fact(clean)
        if any(_normalize_fact(existing) == normalized for existing in record.facts):
            return False
        record.facts.append(clean)
        overflow = len(record.facts) - self.config.max_facts_per_player
        if overflow > 0:
            del record.facts[:overflow]
        return True

    def get_facts(self, username: str) -> list[str]:
        record = self._players.get(username)
        return list(record.facts) if record else []

    def remove_fact(self, username: str, fact: str) -> bool:
        record = self._players.get(username)
        if record is None or fact not in record.facts:
            return False
        record.facts.remove(fact)
        return True

    def _live_topics(self, record: PlayerRecord) -> list[TopicEntry]:
        now = self._clock()
        record.topics = [item for item in record.topics if now - item.timestamp <= self.config.topic_ttl]
        return record.topics

    def add_topic(self, username: str, topic: str) -> bool:
        clean = str(topic or "").strip()
        normalized = _normalize_fact(clean)
        if len(normalized) < 5:
            return False
        record = self._player(username)
        topics = self._live_topics(record)
        if any(item.normalized == normalized for item in topics):
            return False
        topics.append(TopicEntry(text=clean, normalized=normalized, timestamp=self._clock()))
        overflow = len(topics) - self.config.max_topics_per_player
        if overflow > 0:
            del topics[:overflow]
        return True

    def get_topics(self, username: str, limit: int = 5) -> list[str]:
        record = self._players.get(username)
        if record is None:
            return []
        return [item.text for item in self._live_topics(record)[-limit:]]

    def set_muted(self, username: str, duration_sec: float) -> None:
        self._player(username).mute_until = self._clock() + max(0.0, duration_sec)
        LOGGER.info("Player muted name=%s for=%.0fs", username, duration_sec)

    def is_muted(self, username: str) -> bool:
        record = self._players.get(username)
        if record is None or record.mute_until is None:
            return False
        if self._clock() >= record.mute_until:
            record.mute_until = None
            return False
        return True

    def set_last_seen(self, username: str, position: Vec3 | None) -> None:
        record = self._player(username)
        record.last_seen = self._clock()
        record.last_position = position

    def log_interaction(self, username: str, kind: str, content: str) -> None:
        now = self._clock()
        self._player(username).interactions.append({"timestamp": now, "type": kind, "content": content})
        self.log_global_chat(username, content)

    def log_global_chat(self, username: str, content: str) -> None:
        if not content:
            return
        self._global_chat.append({"timestamp": self._clock(), "username": username, "message": str(content)})

    def add_world_fact(self, fact: str, source: str = "user") -> bool:
        clean = str(fact or "").strip()
        if not clean:
            return False
        normalized = _normalize_fact(clean)
        if any(_normalize_fact(item["text"]) == normalized for item in self._world_facts):
            return False
        self._world_facts.append({"timestamp": self._clock(), "source": source, "text": clean})
        return True

    def add_world_event(self, kind: str, text: str) -> bool:
        clean = str(text or "").strip()
        if not clean:
            return False
        self._world_events.append({"timestamp": self._clock(), "type": kind or "event", "text": clean})
        return True

    def get_world_facts(self, limit: int = 20) -> list[str]:
        return [item["text"] for item in list(self._world_facts)[-limit:]]

    def get_world_events(self, limit: int = 20) -> list[dict[str, Any]]:
        return [dict(item) for item in list(self._world_events)[-limit:]]

    def get_recent_global_chat(self, limit: int = 20) -> list[dict[str, Any]]:
        return [dict(item) for item in list(self._global_chat)[-limit:]]

    def get_recent_interactions(self, limit: int = 20) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for username, record in self._players.items():
            for interaction in record.interactions:
                items.append({"username": username, **interaction})
        items.sort(key=lambda item: item["timestamp"], reverse=True)
        return items[:limit]
