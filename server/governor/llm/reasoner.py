from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from governor.config import env_float
from governor.llm.client import LLMClient


LOGGER = logging.getLogger("governor.llm.reasoner")

STRICT_RETRY_HINT = "Верни только валидный JSON без текста вокруг. Строго по формату."


class ActionCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1, max_length=64)
    args: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> Any:
        if value is None:
            return value
        return str(value).strip()

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> Any:
        return value if isinstance(value, Mapping) else {}


class Decision(BaseModel):
    model_config = ConfigDict(extra="ignore")

    thought: str | None = None
    chat: str | None = Field(default=None, max_length=256)
    actions: list[ActionCall] = Field(default_factory=list, max_length=16)

    @field_validator("thought", mode="before")
    @classmethod
    def _coerce_thought(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)

    @field_validator("chat", mode="before")
    @classmethod
    def _coerce_chat(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text[:256] if text else None

    @field_validator("actions", mode="before")
    @classmethod
    def _drop_unnamed_actions(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        kept = [
            item
            for item in value
            if isinstance(item, ActionCall) or (isinstance(item, Mapping) and item.get("name"))
        ]
        return kept[:16]


@dataclass
class LLMReasoner:
    client: LLMClient
    username: str = "bot"
    temperature: float = 0.7

    @classmethod
    def from_env(cls, username: str) -> "LLMReasoner":
        return cls(
            client=LLMClient.from_env(),
            username=username,
            temperature=env_float("LLM_TEMPERATURE", 0.7, 0.0, 2.0),
        )

    def is_available(self) -> bool:
        return self.client.is_available()

    async def generate_response(
        self,
        instruction: str,
        context: dict[str, Any],
        *,
        reason: str,
    ) -> Decision | None:
        if not self.client.is_available():
            return None

        messages = self._messages(instruction, context)
        for attempt in range(2):
            content = await asyncio.to_thread(self.client.complete, messages, temperature=self.temperature)
            if content is None:
                return None

            decision = self.parse_decision(content)
            if decision is not None:
                return decision

            LOGGER.warning("Unparsable decision reason=%s attempt=%d prefix=%r", reason, attempt + 1, content[:160])
            messages = messages + [{"role": "system", "content": STRICT_RETRY_HINT}]
        return None

    def parse_decision(self, content: str) -> Decision | None:
        payload = self.client.extract_json_object(content)
        if payload is None:
            return None
        normalized = self._normalize_payload(payload)
        try:
            return Decision.model_validate(normalized)
        except ValidationError as exc:
            LOGGER.debug("Decision rejected: %s payload=%r", exc.errors(), normalized)
            return None

    def _normalize_payload(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        nested = payload.get("decision")
        if isinstance(nested, Mapping):
            payload = nested

        chat = self._first_value(payload, ("chat", "say", "say_text", "text", "message", "reply"))
        thought = self._first_value(payload, ("thought", "thinking", "reasoning"))
        raw_actions = self._first_value(payload, ("actions", "tools", "tool_calls", "commands"))
        if isinstance(raw_actions, Mapping):
            raw_actions = [raw_actions]

        actions: list[dict[str, Any]] = []
        if isinstance(raw_actions, list):
            for item in raw_actions:
                if isinstance(item, str) and item.strip():
                    actions.append({"name": item.strip(), "args": {}})
                    continue
                if not isinstance(item, Mapping):
                    continue
                name = self._first_str(item, ("name", "tool", "action", "type"))
                if not name:
                    continue
                args = self._first_value(item, ("args", "arguments", "params", "parameters"))
                if isinstance(args, str):
                    try:
                        args = json.loads(args)
                    except ValueError:
                        args = {}
                actions.append({"name": name, "args": args if isinstance(args, Mapping) else {}})

        if isinstance(chat, str) and chat.strip().lower() in {"null", "none"}:
            chat = None
        return {"thought": thought, "chat": chat, "actions": actions}

    def _first_value(self, payload: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
        for key in keys:
            if key in payload:
                return payload.get(key)
        return None

    def _first_str(self, payload: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
        for key in keys:
            value = payload.get(key)
            if isinstance(value, str):
                trimmed = value.strip()
                if trimmed:
                    return trimmed
        return None

    def _messages(self, instruction: str, context: dict[str, Any]) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self._system_prompt()},
            {"role": "system", "content": f"Context: {json.dumps(context, ensure_ascii=False, default=str)}"},
            {"role": "user", "content": instruction},
        ]

    def _system_prompt(self) -> str:
        return (
            f"You are a block-world player character named {self.username}.\n"
            "Speak like a real player: casual, lowercase, no emoji, Russian unless addressed otherwise.\n"
            "Never insult anyone and never reveal personal data.\n"
            "Output strictly ONE JSON object. No markdown, no code fences, no trailing text.\n"
            "\n"
            "Format:\n"
            "{\n"
            '  "thought": "hidden reasoning",\n'
            '  "chat": "text for the public chat or null",\n'
            '  "actions": [{"name": "tool_name", "args": {}}]\n'
            "}\n"
            "\n"
            "Rules:\n"
            "- Check Context inventory before claiming you lack something.\n"
            "- If no action is needed, actions = []. If no chat is needed, chat = null.\n"
            "- Consider every player in Context.players, not only the last sender.\n"
            "- Use Context.recentChat, Context.globalChat and Context.worldFacts as shared memory.\n"
            "- Never break blocks placed by players; gather only natural resources.\n"
            "- Do not announce remember_fact calls in chat.\n"
            "\n"
            "Tools:\n"
            "- say(text), whisper(player, text), reply_to(player, text)\n"
            "- move_to(x, y, z), wander(range), follow(entity_name), stop()\n"
            "- look_at(x, y, z), mine_block(name, count), place_block(name, x, y, z)\n"
            "- pickup_item(name, radius), craft_item(name, count), use_furnace(input_name, fuel_name, count)\n"
            "- attack_entity(name), equip(item_name, slot), give_item(player_name, item_name, count)\n"
            "- eat(name), sleep(), wake()\n"
            "- remember_fact(player_name, fact), remember_world_fact(fact)\n"
            "- start_mining_task(name, count), start_gather_wood(count, types), start_farm_task(crops)\n"
        )
