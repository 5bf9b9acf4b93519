"""Tests for the decision orchestrator: tick loop, autonomous step, dispatch and chat requests."""
from __future__ import annotations

import asyncio

from conftest import player

from governor.agents.agent import InventorySnapshot, OperatingMode
from governor.agents.ports import TaskSpec
from governor.config import BehaviorConfig
from governor.llm.reasoner import ActionCall, Decision
from governor.sim import templates


def decision(chat=None, *actions, thought=None) -> Decision:
    return Decision(thought=thought, chat=chat, actions=[ActionCall(name=name, args=args) for name, args in actions])


def run_then_drain(orchestrator, coro):
    async def scenario():
        result = await coro
        if orchestrator.speech is not None:
            await orchestrator.speech.drain()
        return result

    return asyncio.run(scenario())


# Mode and tick loop


def test_default_mode_and_set_mode(make_orchestrator):
    orchestrator = make_orchestrator()
    assert orchestrator.mode is OperatingMode.MANUAL
    assert orchestrator.set_mode("Survival") is True
    assert orchestrator.mode is OperatingMode.SURVIVAL
    assert orchestrator.set_mode("creative") is False
    assert orchestrator.mode is OperatingMode.SURVIVAL


def test_tick_fast_path_while_task_runs(make_orchestrator, task_layer, backend, config):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("autonomous")
    task_layer.busy = True
    assert asyncio.run(orchestrator.tick()) == config.task_tick_interval
    assert backend.calls == []


def test_tick_runs_one_manual_task(make_orchestrator, task_layer, config):
    orchestrator = make_orchestrator()
    orchestrator.push_manual_task({"name": "start_mining_task", "args": {"name": "iron_ore", "count": 5}})
    orchestrator.push_manual_task({"name": "start_farm_task", "args": {}})

    assert asyncio.run(orchestrator.tick()) == config.idle_tick_interval
    assert task_layer.started == [TaskSpec.mine("iron_ore", 5)]
    assert len(orchestrator.manual_tasks) == 1


def test_manual_mode_ignores_autonomous_step(make_orchestrator, backend, task_layer):
    orchestrator = make_orchestrator()
    asyncio.run(orchestrator.tick())
    assert backend.calls == []
    assert task_layer.started == []


def test_tick_survives_task_layer_errors(make_orchestrator, task_layer, config):
    orchestrator = make_orchestrator()
    task_layer.update_error = RuntimeError("pathfinder crashed")
    assert asyncio.run(orchestrator.tick()) == config.idle_tick_interval


def test_run_loop_uses_slow_interval_until_stopped(make_orchestrator, task_layer, config):
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 3:
            orchestrator.stop()

    orchestrator = make_orchestrator(sleep=sleep)
    asyncio.run(orchestrator.run())
    assert sleeps == [config.idle_tick_interval] * 3
    assert orchestrator.running is False
    assert task_layer.stopped == 1


def test_run_loop_fast_path(make_orchestrator, task_layer, config):
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)
        task_layer.busy = False
        if len(sleeps) == 2:
            orchestrator.stop()

    task_layer.busy = True
    orchestrator = make_orchestrator(sleep=sleep)
    asyncio.run(orchestrator.run())
    assert sleeps == [config.task_tick_interval, config.idle_tick_interval]


def test_start_and_close(make_orchestrator, task_layer):
    async def scenario():
        orchestrator.start()
        assert orchestrator.running is True
        await asyncio.sleep(0)
        await orchestrator.close()

    async def yielding_sleep(seconds):
        await asyncio.sleep(0)

    orchestrator = make_orchestrator(sleep=yielding_sleep)
    asyncio.run(scenario())
    assert orchestrator.running is False
    assert task_layer.stopped == 1


def test_close_waits_for_pending_consultation(make_orchestrator, backend, world):
    world.players = [player("Alice")]
    finished = []

    async def scenario():
        started = asyncio.Event()
        gate = asyncio.Event()

        async def slow_response(instruction, context, *, reason):
            started.set()
            await gate.wait()
            finished.append(reason)
            return None

        backend.generate_response = slow_response
        orchestrator = make_orchestrator()
        orchestrator.set_mode("autonomous")
        orchestrator.start()
        await started.wait()

        closing = asyncio.create_task(orchestrator.close())
        await asyncio.sleep(0)
        assert not closing.done()
        gate.set()
        await closing
        return orchestrator

    orchestrator = asyncio.run(scenario())
    assert finished == ["autonomous"]
    assert orchestrator.running is False


# Autonomous step


def test_solo_survival_step_skips_consultation(make_orchestrator, task_layer, backend):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("autonomous")
    assert asyncio.run(orchestrator.autonomous_step()) is None
    assert task_layer.started == [TaskSpec.gather_wood(24)]
    assert backend.calls == []


def test_solo_consultation_drops_chat(make_orchestrator, backend, sink, skills):
    config = BehaviorConfig(autonomous_survival_enabled=False)
    orchestrator = make_orchestrator(config=config)
    orchestrator.set_mode("autonomous")
    backend.decisions.append(decision("тут никого", ("mine_block", {"name": "stone", "count": 1})))

    result = run_then_drain(orchestrator, orchestrator.autonomous_step())

    assert result.chat is None
    assert sink.lines == []
    assert skills.names() == ["mine_block"]
    call = backend.calls[0]
    assert call["reason"] == "autonomous"
    assert templates.PLAYER_NEAR_INSTRUCTION not in call["instruction"]
    assert call["context"]["socialTarget"] is None


def test_solo_idle_when_cooldown_blocks(make_orchestrator, backend, world, skills, config):
    orchestrator = make_orchestrator(config=BehaviorConfig(autonomous_survival_enabled=False))
    orchestrator.set_mode("autonomous")
    orchestrator.should_query()
    world.drops = [{"name": "oak_log", "distance": 4}]

    asyncio.run(orchestrator.autonomous_step())

    assert backend.calls == []
    assert skills.calls == [
        ("pickup_item", {"radius": config.scan_radius_drops}),
        ("wander", {"range": config.wander_range}),
    ]


def test_no_wander_while_moving(make_orchestrator, world, skills):
    orchestrator = make_orchestrator(config=BehaviorConfig(autonomous_survival_enabled=False))
    orchestrator.set_mode("autonomous")
    orchestrator.should_query()
    world.moving = True
    asyncio.run(orchestrator.autonomous_step())
    assert skills.calls == []


def test_decision_cooldown_blocks_second_consultation(make_orchestrator, backend, world, clock, config):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("autonomous")
    world.players = [player("Alice")]
    asyncio.run(orchestrator.autonomous_step())
    clock.advance(config.chat_cooldown + 1)
    asyncio.run(orchestrator.autonomous_step())
    assert len(backend.calls) == 1
    clock.advance(config.autonomous_decision_cooldown)
    asyncio.run(orchestrator.autonomous_step())
    assert len(backend.calls) == 2


def test_social_rounds_rotate_between_players(make_orchestrator, backend, world, sink, clock, config):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("autonomous")
    world.players = [player("Bob", distance=4.0), player("Alice", distance=9.0)]
    clock.advance(config.speech_autonomous_min_interval + 1)

    backend.decisions.append(decision("привет всем"))
    run_then_drain(orchestrator, orchestrator.autonomous_step())

    clock.advance(config.social_round_interval + 1)
    backend.decisions.append(decision("bob, что строишь?"))
    run_then_drain(orchestrator, orchestrator.autonomous_step())

    assert sink.lines == ["Alice, привет всем", "bob, что строишь?"]
    assert backend.calls[0]["context"]["socialTarget"]["name"] == "Alice"
    assert "Alice" in backend.calls[0]["instruction"]
    assert templates.PLAYER_NEAR_INSTRUCTION in backend.calls[0]["instruction"]
    assert backend.calls[1]["context"]["socialTarget"]["name"] == "Bob"
    assert orchestrator.rotation.cursor == 2


def test_rejected_line_keeps_the_turn(make_orchestrator, backend, world, sink):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("autonomous")
    world.players = [player("Alice")]
    backend.decisions.append(decision("эй"))

    run_then_drain(orchestrator, orchestrator.autonomous_step())

    assert sink.lines == []
    assert orchestrator.rotation.cursor == 0
    assert orchestrator.rotation.last_round_at is None


def test_survival_mode_ignores_players(make_orchestrator, backend, world, task_layer):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("survival")
    world.players = [player("Alice")]
    world.snapshot = InventorySnapshot.from_counts({"crafting_table": 1, "oak_log": 20, "iron_pickaxe": 1})
    backend.decisions.append(decision(None))

    asyncio.run(orchestrator.autonomous_step())

    call = backend.calls[0]
    assert call["instruction"] == templates.SURVIVAL_INSTRUCTION
    assert call["context"]["socialTarget"] is None
    assert call["reason"] == "survival"
    assert task_layer.started == []


def test_survival_mode_progression_wins_with_players(make_orchestrator, backend, world, task_layer):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("survival")
    world.players = [player("Alice")]
    asyncio.run(orchestrator.autonomous_step())
    assert task_layer.started == [TaskSpec.gather_wood(24)]
    assert backend.calls == []


def test_context_carries_memory_and_mood(make_orchestrator, backend, world, memory):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("autonomous")
    world.players = [player("Alice")]
    world.snapshot = InventorySnapshot.from_counts({"torch": 4}, health=7, food=18)
    memory.add_fact("Alice", "любит рыбалку")
    memory.adjust_trust("Alice", 3)
    memory.add_topic("Alice", "строим маяк у моря")
    memory.add_world_fact("деревня на востоке")

    asyncio.run(orchestrator.autonomous_step())

    context = backend.calls[0]["context"]
    assert context["memory"] == {"Alice": ["любит рыбалку"]}
    assert context["playerTrust"] == {"Alice": 3}
    assert context["conversationTopics"] == {"Alice": ["строим маяк у моря"]}
    assert context["worldFacts"] == ["деревня на востоке"]
    assert context["botMood"] == {"mood": "irritated", "health": 7, "food": 18}
    assert context["inventory"] == [{"name": "torch", "count": 4}]
    assert context["players"][0]["name"] == "Alice"
    assert context["isMoving"] is False


def test_far_players_count_as_solo(make_orchestrator, backend, world, task_layer):
    orchestrator = make_orchestrator()
    orchestrator.set_mode("autonomous")
    world.players = [player("Alice", distance=100.0)]
    asyncio.run(orchestrator.autonomous_step())
    assert task_layer.started == [TaskSpec.gather_wood(24)]
    assert backend.calls == []


def test_force_consult_ignores_cooldowns(make_orchestrator, backend):
    orchestrator = make_orchestrator()
    orchestrator.should_query()
    orchestrator.should_decide()
    backend.decisions.append(decision(None, ("wander", {"range": 10})))

    result = asyncio.run(orchestrator.force_consult())

    assert result is not None
    assert len(backend.calls) == 1
    assert orchestrator.should_query() is False


def test_pulse_waits_for_speech_timer(make_orchestrator, backend, world, memory, sink, speech, clock):
    world.players = [player("Bob", distance=9.0), player("Alice", distance=4.0)]
    memory.add_fact("Alice", "строит замок")
    orchestrator = make_orchestrator()
    backend.decisions.append(decision("замок сам себя не построит"))

    assert asyncio.run(orchestrator.ambient_pulse()) is None
    assert backend.calls == []

    clock.advance(speech.next_autonomous_at - clock())
    line = run_then_drain(orchestrator, orchestrator.ambient_pulse())

    assert line == "замок сам себя не построит"
    assert sink.lines == [line]
    call = backend.calls[0]
    assert call["reason"] == "pulse"
    assert call["context"]["nearbyPlayer"] == "Alice"
    assert call["context"]["playerFact"] == "строит замок"


def test_pulse_skipped_while_busy_or_alone(make_orchestrator, backend, world, task_layer, speech, clock):
    orchestrator = make_orchestrator()
    clock.advance(speech.next_autonomous_at - clock())

    assert asyncio.run(orchestrator.ambient_pulse()) is None
    world.players = [player("Alice")]
    task_layer.busy = True
    assert asyncio.run(orchestrator.ambient_pulse()) is None
    assert backend.calls == []


# Decision dispatch


def test_task_actions_go_to_task_layer(make_orchestrator, task_layer, skills):
    orchestrator = make_orchestrator()
    plan = decision(
        None,
        ("start_gather_wood", {"count": "16", "types": "oak_log, birch_log"}),
        ("start_mining_task", {"target": "coal_ore"}),
        ("start_farming_task", {"crops": ["wheat"]}),
        ("start_mining_task", {}),
    )
    asyncio.run(orchestrator.execute_decision(plan, reason="direct"))
    assert task_layer.started == [
        TaskSpec.gather_wood(16, ["oak_log", "birch_log"]),
        TaskSpec.mine("coal_ore", 10),
        TaskSpec.farm(["wheat"]),
    ]
    assert skills.calls == []


def test_failed_skill_apologises_and_continues(make_orchestrator, skills, sink):
    orchestrator = make_orchestrator()
    skills.failing.add("craft_item")
    plan = decision(None, ("craft_item", {"name": "bed"}), ("eat", {"name": "bread"}))

    run_then_drain(orchestrator, orchestrator.execute_decision(plan, reason="direct", player="Alice"))

    assert skills.names() == ["craft_item", "eat"]
    assert len(sink.lines) == 1
    assert "craft_item" in sink.lines[0]


def test_unknown_skill_is_skipped(make_orchestrator, skills):
    orchestrator = make_orchestrator()
    plan = decision(None, ("fly_to_moon", {}), ("eat", {"name": "bread"}))
    asyncio.run(orchestrator.execute_decision(plan))
    assert skills.names() == ["eat"]


def test_say_action_keeps_caller_reason(make_orchestrator, skills, sink):
    orchestrator = make_orchestrator()
    reply = decision(None, ("say", {"text": "уже иду"}))
    run_then_drain(orchestrator, orchestrator.execute_decision(reply, reason="direct", player="Alice"))
    # Autonomous lines still wait for the autonomous timer.
    asyncio.run(orchestrator.execute_decision(decision(None, ("say", {"text": "скучно"})), reason="autonomous"))

    assert sink.lines == ["уже иду"]
    assert skills.calls == []


def test_execute_returns_only_accepted_chat(make_orchestrator, speech):
    orchestrator = make_orchestrator()
    assert asyncio.run(orchestrator.execute_decision(decision("привет"), reason="autonomous")) is None
    assert asyncio.run(orchestrator.execute_decision(decision("привет"), reason="direct")) == "привет"


def test_sink_fallback_without_throttle(make_orchestrator, sink):
    orchestrator = make_orchestrator(speech=None, speech_sink=sink)
    assert asyncio.run(orchestrator.execute_decision(decision("сам скажу"))) == "сам скажу"
    assert sink.lines == ["сам скажу"]


def test_autonomous_follow_disabled_by_default(make_orchestrator, skills):
    orchestrator = make_orchestrator()
    asyncio.run(orchestrator.execute_decision(decision(None, ("follow", {"player": "Alice"})), reason="autonomous"))
    assert skills.calls == []


def test_follow_admission_through_dispatch(make_orchestrator, skills, world, clock, config):
    orchestrator = make_orchestrator()
    world.players = [player("Alice"), player("Bob")]
    orchestrator.follow.observe(world.players)

    def follow(name):
        asyncio.run(orchestrator.execute_decision(decision(None, ("follow", {"player": name})), reason="direct"))

    follow("Alice")
    clock.advance(5)
    # Inside the global cooldown even the current target is refused.
    follow("Alice")
    clock.advance(35)
    follow("Bob")
    # Re-following Alice refreshes the stick window.
    follow("Alice")
    clock.advance(config.follow_stick + 1)
    follow("Bob")

    assert skills.calls == [
        ("follow", {"player": "Alice"}),
        ("follow", {"player": "Alice"}),
        ("follow", {"player": "Bob"}),
    ]
    assert orchestrator.follow.state.target == "Bob"


def test_follow_placeholder_uses_nearest_player(make_orchestrator, skills, world):
    orchestrator = make_orchestrator()
    world.players = [player("Far", distance=15.0), player("Near", distance=2.0)]
    orchestrator.follow.observe(world.players)
    asyncio.run(orchestrator.execute_decision(decision(None, ("follow", {"entity_name": "player"})), reason="mention"))
    assert skills.calls == [("follow", {"entity_name": "player", "player": "Near"})]


# Chat-triggered requests


def test_direct_request_bypasses_cooldown(make_orchestrator, backend, sink):
    orchestrator = make_orchestrator()
    orchestrator.should_query()
    backend.decisions.append(decision("привет, Alice"))

    result = run_then_drain(orchestrator, orchestrator.process_user_request("Alice", "привет бот"))

    assert result is not None
    call = backend.calls[0]
    assert call["reason"] == "direct"
    assert call["context"]["lastSender"] == "Alice"
    assert "привет бот" in call["instruction"]
    assert sink.lines == ["привет, Alice"]


def test_direct_request_without_chat_acknowledges(make_orchestrator, backend, sink):
    orchestrator = make_orchestrator()
    backend.decisions.append(decision(None, ("eat", {"name": "bread"})))
    run_then_drain(orchestrator, orchestrator.process_user_request("Alice", "поешь"))
    assert len(sink.lines) == 1
    assert sink.lines[0] in templates.TEMPLATES["ack"]


def test_direct_request_backend_down(make_orchestrator, backend, sink):
    orchestrator = make_orchestrator()
    backend.available = False
    assert run_then_drain(orchestrator, orchestrator.process_user_request("Alice", "эй")) is None
    assert len(sink.lines) == 1
    assert sink.lines[0] in templates.TEMPLATES["backend_down"]


def test_direct_request_not_understood(make_orchestrator, backend, sink):
    orchestrator = make_orchestrator()
    run_then_drain(orchestrator, orchestrator.process_user_request("Alice", "эй"))
    assert sink.lines[0] in templates.TEMPLATES["not_understood"]


def test_passive_request_respects_cooldown_and_mute(make_orchestrator, backend, memory, sink):
    orchestrator = make_orchestrator()
    memory.set_muted("Carl", 120)
    assert asyncio.run(orchestrator.process_user_request("Carl", "бот, привет", passive=True)) is None
    assert backend.calls == []

    orchestrator.should_query()
    assert asyncio.run(orchestrator.process_user_request("Alice", "всем привет", passive=True)) is None
    assert backend.calls == []

    assert run_then_drain(orchestrator, orchestrator.process_user_request("Alice", "всем привет", passive=True, force=True)) is None
    assert backend.calls[0]["reason"] == "social"
    assert templates.PASSIVE_REQUEST_INSTRUCTION in backend.calls[0]["instruction"]
    assert sink.lines == []


def test_state_payload(make_orchestrator):
    orchestrator = make_orchestrator()
    orchestrator.push_manual_task(ActionCall(name="wander", args={}))
    payload = orchestrator.state_payload()
    assert payload["mode"] == "manual"
    assert payload["manual_tasks"] == 1
    assert payload["follow"] is None
    assert payload["speech"]["mode"] == "neutral"
