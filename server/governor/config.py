from __future__ import annotations

import os
from dataclasses import dataclass


def env_int(name: str, default: int, low: int, high: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return max(low, min(high, value))


def env_float(name: str, default: float, low: float, high: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return max(low, min(high, value))


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


# All durations are seconds.
@dataclass
class BehaviorConfig:
    username: str = "bot"
    default_mode: str = "manual"

    task_tick_interval: float = 0.5
    idle_tick_interval: float = 2.0

    chat_cooldown: float = 5.0
    autonomous_decision_cooldown: float = 20.0
    max_chat_history: int = 20
    world_context_limit: int = 20
    topics_per_player: int = 5

    social_round_interval: float = 500.0
    per_player_chat_cooldown: float = 300.0
    social_max_distance: float = 32.0

    follow_global_cooldown: float = 30.0
    follow_stick: float = 90.0
    autonomous_follow_enabled: bool = False

    autonomous_survival_enabled: bool = True
    survival_step_cooldown: float = 10.0
    survival_action_cooldown: float = 15.0

    auto_pickup_drops: bool = True
    scan_radius_drops: float = 18.0
    wander_range: float = 28.0

    auto_chat_cooldown: float = 0.0
    auto_chat_history: float = 600.0
    auto_chat_history_size: int = 20

    speech_min_delay: float = 0.6
    speech_max_delay: float = 2.5
    speech_busy_delay: float = 6.0
    speech_direct_min_delay: float = 0.0
    speech_direct_max_delay: float = 0.4
    speech_event_min_delay: float = 0.08
    speech_event_max_delay: float = 0.6

    speech_burst_window: float = 20.0
    speech_burst_max: int = 3
    speech_direct_burst_max: int = 6

    speech_pulse_interval: float = 60.0
    speech_pulse_chance_focused: float = 0.03
    speech_pulse_chance_neutral: float = 0.08
    speech_pulse_chance_chatty: float = 0.18
    speech_autonomous_min_interval: float = 240.0
    speech_autonomous_max_interval: float = 420.0

    speech_energy_initial: float = 55.0
    speech_energy_step: float = 10.0
    speech_energy_recover_per_step: float = 2.0
    speech_energy_night_penalty: float = 1.0
    speech_energy_decay_on_talk: float = 8.0
    speech_energy_decay_on_direct: float = 5.0
    speech_energy_decay_on_event: float = 4.0

    max_facts_per_player: int = 50
    topic_ttl: float = 1800.0
    max_topics_per_player: int = 10

    @classmethod
    def from_env(cls) -> "BehaviorConfig":
        return cls(
            username=env_str("BOT_USERNAME", "bot"),
            default_mode=env_str("BOT_DEFAULT_MODE", "manual").lower(),
            task_tick_interval=env_float("BOT_TASK_TICK_SEC", 0.5, 0.05, 10.0),
            idle_tick_interval=env_float("BOT_IDLE_TICK_SEC", 2.0, 0.1, 60.0),
            chat_cooldown=env_float("BOT_CHAT_COOLDOWN_SEC", 5.0, 0.0, 3600.0),
            autonomous_decision_cooldown=env_float("BOT_DECISION_COOLDOWN_SEC", 20.0, 0.0, 3600.0),
            max_chat_history=env_int("BOT_MAX_CHAT_HISTORY", 20, 1, 200),
            world_context_limit=env_int("BOT_WORLD_CONTEXT_LIMIT", 20, 1, 80),
            topics_per_player=env_int("BOT_TOPICS_PER_PLAYER", 5, 1, 20),
            social_round_interval=env_float("BOT_SOCIAL_ROUND_SEC", 500.0, 0.0, 86400.0),
            per_player_chat_cooldown=env_float("BOT_PER_PLAYER_COOLDOWN_SEC", 300.0, 0.0, 86400.0),
            social_max_distance=env_float("BOT_SOCIAL_MAX_DISTANCE", 32.0, 1.0, 256.0),
            follow_global_cooldown=env_float("BOT_FOLLOW_COOLDOWN_SEC", 30.0, 0.0, 3600.0),
            follow_stick=env_float("BOT_FOLLOW_STICK_SEC", 90.0, 0.0, 3600.0),
            autonomous_follow_enabled=env_bool("BOT_AUTONOMOUS_FOLLOW", False),
            autonomous_survival_enabled=env_bool("BOT_AUTONOMOUS_SURVIVAL", True),
            survival_step_cooldown=env_float("BOT_SURVIVAL_STEP_SEC", 10.0, 0.0, 600.0),
            survival_action_cooldown=env_float("BOT_SURVIVAL_ACTION_SEC", 15.0, 0.0, 600.0),
            auto_pickup_drops=env_bool("BOT_AUTO_PICKUP", True),
            scan_radius_drops=env_float("BOT_DROPS_RADIUS", 18.0, 1.0, 128.0),
            wander_range=env_float("BOT_WANDER_RANGE", 28.0, 1.0, 256.0),
            auto_chat_cooldown=env_float("SPEECH_AMBIENT_COOLDOWN_SEC", 0.0, 0.0, 3600.0),
            auto_chat_history=env_float("SPEECH_HISTORY_SEC", 600.0, 0.0, 86400.0),
            auto_chat_history_size=env_int("SPEECH_HISTORY_SIZE", 20, 1, 500),
            speech_min_delay=env_float("SPEECH_MIN_DELAY_SEC", 0.6, 0.0, 60.0),
            speech_max_delay=env_float("SPEECH_MAX_DELAY_SEC", 2.5, 0.0, 60.0),
            speech_busy_delay=env_float("SPEECH_BUSY_DELAY_SEC", 6.0, 0.0, 120.0),
            speech_direct_min_delay=env_float("SPEECH_DIRECT_MIN_DELAY_SEC", 0.0, 0.0, 60.0),
            speech_direct_max_delay=env_float("SPEECH_DIRECT_MAX_DELAY_SEC", 0.4, 0.0, 60.0),
            speech_event_min_delay=env_float("SPEECH_EVENT_MIN_DELAY_SEC", 0.08, 0.0, 60.0),
            speech_event_max_delay=env_float("SPEECH_EVENT_MAX_DELAY_SEC", 0.6, 0.0, 60.0),
            speech_burst_window=env_float("SPEECH_BURST_WINDOW_SEC", 20.0, 1.0, 3600.0),
            speech_burst_max=env_int("SPEECH_BURST_MAX", 3, 1, 100),
            speech_direct_burst_max=env_int("SPEECH_DIRECT_BURST_MAX", 6, 1, 100),
            speech_pulse_interval=env_float("SPEECH_PULSE_SEC", 60.0, 0.0, 3600.0),
            speech_pulse_chance_focused=env_float("SPEECH_CHANCE_FOCUSED", 0.03, 0.0, 1.0),
            speech_pulse_chance_neutral=env_float("SPEECH_CHANCE_NEUTRAL", 0.08, 0.0, 1.0),
            speech_pulse_chance_chatty=env_float("SPEECH_CHANCE_CHATTY", 0.18, 0.0, 1.0),
            speech_autonomous_min_interval=env_float("SPEECH_AUTONOMOUS_MIN_SEC", 240.0, 10.0, 86400.0),
            speech_autonomous_max_interval=env_float("SPEECH_AUTONOMOUS_MAX_SEC", 420.0, 10.0, 86400.0),
            speech_energy_initial=env_float("SPEECH_ENERGY_INITIAL", 55.0, 0.0, 100.0),
            speech_energy_step=env_float("SPEECH_ENERGY_STEP_SEC", 10.0, 1.0, 600.0),
            speech_energy_recover_per_step=env_float("SPEECH_ENERGY_RECOVER", 2.0, 0.0, 100.0),
            speech_energy_night_penalty=env_float("SPEECH_ENERGY_NIGHT_PENALTY", 1.0, 0.0, 100.0),
            speech_energy_decay_on_talk=env_float("SPEECH_ENERGY_DECAY_TALK", 8.0, 0.0, 100.0),
            speech_energy_decay_on_direct=env_float("SPEECH_ENERGY_DECAY_DIRECT", 5.0, 0.0, 100.0),
            speech_energy_decay_on_event=env_float("SPEECH_ENERGY_DECAY_EVENT", 4.0, 0.0, 100.0),
            max_facts_per_player=env_int("MEMORY_MAX_FACTS_PER_PLAYER", 50, 1, 1000),
            topic_ttl=env_float("MEMORY_TOPIC_TTL_SEC", 1800.0, 1.0, 604800.0),
            max_topics_per_player=env_int("MEMORY_MAX_TOPICS_PER_PLAYER", 10, 1, 100),
        )
