from __future__ import annotations

import logging
from typing import Any


TEMPLATES: dict[str, list[str]] = {
    "ack": [
        "ок, принял",
        "ага, понял",
        "принято",
    ],
    "backend_down": [
        "llm сейчас недоступен, попробуй позже",
        "голова не варит, попробуй чуть позже",
    ],
    "not_understood": [
        "чёт не понял, повтори",
        "не понял, скажи ещё раз",
    ],
    "action_failed": [
        "сек, не могу сделать {action}, чет сломалось",
        "не выходит {action}, щас разберусь",
        "{action} не получилось, попробую позже",
    ],
}

LOGGER = logging.getLogger("governor.sim.templates")


def _mix_selector(selector: int) -> int:
    # Deterministic integer mixer to avoid obvious modulo cycles on sequential calls.
    value = abs(int(selector)) & 0xFFFFFFFF
    value ^= value >> 16
    value = (value * 0x45D9F3B) & 0xFFFFFFFF
    value ^= value >> 16
    value = (value * 0x45D9F3B) & 0xFFFFFFFF
    value ^= value >> 16
    return value


def choose_template(kind: str, selector: int) -> str:
    options = TEMPLATES.get(kind, [])
    if not options:
        return "..."
    return options[_mix_selector(selector) % len(options)]


def render(kind: str, selector: int, **kwargs: Any) -> str:
    template = choose_template(kind, selector)
    payload = dict(kwargs)
    payload.setdefault("action", "это")

    class _SafeFormatDict(dict):
        def __missing__(self, key: str) -> str:
            if LOGGER.isEnabledFor(logging.DEBUG):
                LOGGER.debug(
                    "Template missing key kind=%s key=%s payload_keys=%s",
                    kind,
                    key,
                    sorted(payload.keys()),
                )
            return ""

    return template.format_map(_SafeFormatDict(payload))


SOCIAL_INSTRUCTION = (
    "You are in AUTONOMOUS (social) mode. Be sociable but never spam. "
    "1. If you see a player you may approach and start a conversation, but write rarely and to the point. "
    "2. Use Context.playerTrust and Context.botMood to adjust your tone to the mood and to each player. "
    "3. Players in Context.players take turns: talk to everyone in the public chat in rotation, never pushy. "
    "4. If nobody is near, focus on survival and progress (gathering, crafting, farming). "
    "5. If a player gave you an item or food, thank them briefly."
)

SOCIAL_TARGET_INSTRUCTION = (
    " Social round NOW: address player {name} in the public chat. Mention the name, keep it short."
)

MOVING_INSTRUCTION = (
    " You are walking. If you see a player, a short chat line is fine. You may switch the goal if it is far."
)

PLAYER_NEAR_INSTRUCTION = (
    " IMPORTANT: A PLAYER IS NEAR. DO NOT SPAM, one phrase at most. Use remember_fact if you learned something new."
)

SURVIVAL_INSTRUCTION = (
    "You are in SURVIVAL mode. Goal: survive, gather resources, craft tools and armor. "
    "For large amounts of a resource use start_mining_task or start_gather_wood instead of single blocks. "
    "1. Food and health first. "
    "2. Tools: logs -> planks -> crafting table -> pickaxe -> stone -> iron. "
    "3. Ignore players unless they get in the way."
)

USER_REQUEST_INSTRUCTION = (
    'Player {username} writes: "{message}". '
    "If asked to remember something use remember_fact. "
    "If asked to gather a lot use start_mining_task."
)

PASSIVE_REQUEST_INSTRUCTION = (
    " This is from the public chat: answer briefly and to the point. Do not stay silent, avoid extra actions."
)

PULSE_INSTRUCTION = (
    "Say ONE short light-hearted line for the public chat, in character. "
    "Tie it to the current situation in Context or to Context.playerFact about Context.nearbyPlayer. "
    "No questions, no insults, lowercase. Return chat only, actions = []."
)
