from typing import Any

from pydantic import BaseModel, Field


class ControlModeIn(BaseModel):
    mode: str = Field(min_length=1, max_length=32)


class ControlTaskIn(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    args: dict[str, Any] = Field(default_factory=dict)


class ChatIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    message: str = Field(min_length=1, max_length=2000)
    reason: str | None = Field(default=None, max_length=32)
    passive: bool = False
    force: bool = False


class PlayerIn(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    distance: float = Field(default=0.0, ge=0.0)
    visible: bool = True
    x: float | None = None
    y: float = 0.0
    z: float = 0.0


class ItemIn(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    count: int = Field(default=1, ge=0)
    food: float = Field(default=0.0, ge=0.0)


class WorldUpdateIn(BaseModel):
    players: list[PlayerIn] = Field(default_factory=list, max_length=200)
    entities: list[dict[str, Any]] = Field(default_factory=list, max_length=500)
    drops: list[dict[str, Any]] = Field(default_factory=list, max_length=500)
    inventory: list[ItemIn] = Field(default_factory=list, max_length=200)
    health: float = Field(default=20.0, ge=0.0, le=20.0)
    food: float = Field(default=20.0, ge=0.0, le=20.0)
    moving: bool = False
    night: bool = False
    task_active: bool | None = None
