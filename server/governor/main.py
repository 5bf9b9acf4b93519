from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from governor.agents.ports import ReasoningBackend
from governor.bridge import WorldBridge
from governor.config import BehaviorConfig
from governor.db.models import ChatIn, ControlModeIn, ControlTaskIn, WorldUpdateIn
from governor.llm.reasoner import LLMReasoner
from governor.memory.store import MemoryStore
from governor.sim.orchestrator import DecisionOrchestrator
from governor.sim.speech import SpeechThrottle


def _load_env_from_repo_root() -> None:
    # server/governor/main.py -> repo root is 2 levels up from "server"
    env_path = Path(__file__).resolve().parents[2] / ".env"
    if not env_path.exists():
        return

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = value.strip()
        if value and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


_load_env_from_repo_root()

LOGGER = logging.getLogger("governor.main")


@dataclass
class Runtime:
    config: BehaviorConfig
    memory: MemoryStore
    bridge: WorldBridge
    speech: SpeechThrottle
    backend: ReasoningBackend
    orchestrator: DecisionOrchestrator


def build_runtime(config: BehaviorConfig | None = None, *, backend: ReasoningBackend | None = None) -> Runtime:
    config = config or BehaviorConfig.from_env()
    memory = MemoryStore(config)
    bridge = WorldBridge(config.username, memory)
    speech = SpeechThrottle(config, bridge)
    bridge.attach_speech(speech)
    backend = backend or LLMReasoner.from_env(config.username)
    orchestrator = DecisionOrchestrator(
        config,
        world=bridge,
        task_layer=bridge,
        backend=backend,
        memory=memory,
        skills=bridge.skills,
        speech=speech,
    )
    return Runtime(
        config=config,
        memory=memory,
        bridge=bridge,
        speech=speech,
        backend=backend,
        orchestrator=orchestrator,
    )


def create_app(runtime: Runtime | None = None, *, autostart: bool | None = None) -> FastAPI:
    runtime = runtime or build_runtime()
    if autostart is None:
        autostart = os.getenv("BOT_AUTOSTART", "1").strip().lower() in {"1", "true", "yes", "on"}

    app = FastAPI(title="Block Governor", version="0.1.0")
    app.state.runtime = runtime
    orchestrator = runtime.orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup() -> None:
        if autostart:
            orchestrator.start()
            LOGGER.info("Decision loop started mode=%s", orchestrator.mode.value)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await orchestrator.close()
        await runtime.speech.close()

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok", "llm_available": runtime.backend.is_available()}

    @app.get("/api/state")
    async def state() -> dict:
        payload = orchestrator.state_payload()
        payload["task"] = runtime.bridge.task_payload()
        payload["outbox_size"] = runtime.bridge.outbox_size
        payload["known_players"] = runtime.memory.known_players()
        return payload

    @app.post("/api/control/mode")
    async def control_mode(payload: ControlModeIn) -> dict:
        if not orchestrator.set_mode(payload.mode):
            raise HTTPException(status_code=400, detail="unknown mode")
        return {"mode": orchestrator.mode.value}

    @app.post("/api/control/task")
    async def control_task(payload: ControlTaskIn) -> dict:
        try:
            action = orchestrator.push_manual_task({"name": payload.name, "args": payload.args})
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        return {"accepted": True, "task": action.name, "queued": len(orchestrator.manual_tasks)}

    @app.post("/api/control/consult")
    async def control_consult() -> dict:
        decision = await orchestrator.force_consult()
        return {"decision": decision.model_dump() if decision is not None else None}

    @app.post("/api/chat")
    async def chat(payload: ChatIn) -> dict:
        runtime.memory.log_interaction(payload.username, "chat", payload.message)
        decision = await orchestrator.process_user_request(
            payload.username,
            payload.message,
            reason=payload.reason,
            passive=payload.passive,
            force=payload.force,
        )
        return {
            "accepted": decision is not None,
            "decision": decision.model_dump() if decision is not None else None,
        }

    @app.post("/api/world")
    async def world_update(payload: WorldUpdateIn) -> dict:
        runtime.bridge.apply_snapshot(payload)
        return {"accepted": True, "players": len(runtime.bridge.scan().players)}

    @app.get("/api/outbox")
    async def outbox(limit: int = Query(default=50, ge=1, le=200)) -> dict:
        return {"items": runtime.bridge.drain_outbox(limit)}

    return app


app = create_app()
