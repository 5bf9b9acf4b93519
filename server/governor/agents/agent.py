from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable


@dataclass
class Vec3:
    x: float
    y: float = 0.0
    z: float = 0.0

    def to_dict(self) -> dict:
        return {"x": round(self.x, 2), "y": round(self.y, 2), "z": round(self.z, 2)}


class OperatingMode(str, Enum):
    MANUAL = "manual"
    AUTONOMOUS = "autonomous"
    SURVIVAL = "survival"

    @classmethod
    def parse(cls, value: str | None) -> "OperatingMode | None":
        if value is None:
            return None
        normalized = str(value).strip().lower()
        for mode in cls:
            if mode.value == normalized:
                return mode
        return None


def mood_label(health: float, food: float) -> str:
    if health <= 8 or food <= 8:
        return "irritated"
    if health >= 16 and food >= 16:
        return "good"
    return "neutral"


@dataclass
class PlayerSighting:
    name: str
    distance: float = 0.0
    visible: bool = True
    position: Vec3 | None = None
    last_seen: float | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "distance": round(self.distance, 2),
            "visible": self.visible,
            "position": self.position.to_dict() if self.position else None,
            "last_seen": self.last_seen,
        }


@dataclass
class WorldScan:
    players: list[PlayerSighting] = field(default_factory=list)
    entities: list[dict[str, Any]] = field(default_factory=list)
    drops: list[dict[str, Any]] = field(default_factory=list)

    def nearby_players(self, max_distance: float) -> list[PlayerSighting]:
        return [player for player in self.players if player.visible and player.distance <= max_distance]

    def to_context(self, players: list[PlayerSighting] | None = None) -> dict[str, Any]:
        selected = self.players if players is None else players
        return {
            "players": [player.to_dict() for player in selected],
            "nearbyEntities": list(self.entities),
            "nearbyDrops": list(self.drops),
        }


@dataclass
class InventoryItem:
    name: str
    count: int = 1
    food: float = 0.0


@dataclass
class InventorySnapshot:
    items: list[InventoryItem] = field(default_factory=list)
    health: float = 20.0
    food: float = 20.0

    @classmethod
    def from_counts(
        cls,
        counts: dict[str, int],
        *,
        health: float = 20.0,
        food: float = 20.0,
        food_values: dict[str, float] | None = None,
    ) -> "InventorySnapshot":
        values = food_values or {}
        items = [
            InventoryItem(name=name, count=int(count), food=float(values.get(name, 0.0)))
            for name, count in counts.items()
            if int(count) > 0
        ]
        return cls(items=items, health=health, food=food)

    def count(self, name: str) -> int:
        return sum(item.count for item in self.items if item.name == name)

    def has(self, name: str) -> bool:
        return self.count(name) > 0

    def count_by_suffix(self, suffixes: Iterable[str]) -> int:
        endings = tuple(suffixes)
        return sum(item.count for item in self.items if item.name.endswith(endings))

    def best_food(self) -> InventoryItem | None:
        foods = [item for item in self.items if item.food > 0 and item.count > 0]
        if not foods:
            return None
        foods.sort(key=lambda item: item.food, reverse=True)
        return foods[0]
