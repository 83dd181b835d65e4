# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the APTAN agent backend (FastAPI).

Read side of the task mirror, sync controls, manual retry, provider
probe, and SSE streams of task updates.

The mirror is the authority for chain-derived fields. POST /api/tasks is
an optimistic client write that the next sync cycle reconciles.
"""

import sys
import os
import time
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json as json_mod
import queue as _queue_mod
from fastapi import FastAPI, HTTPException
from starlette.responses import StreamingResponse
from pydantic import BaseModel
from typing import Optional

from server.store import TaskStore
from server.publisher import TaskUpdateBus, TooManySubscribers
from server.chain import LedgerBackend, RevertError, is_connectivity_error
from server.fulfillment import TaskNotFound
from protocol import TOKEN_SYMBOL, from_base_units, task_status

SSE_KEEPALIVE = 15.0


# --- Request models ---

class CreateTaskRequest(BaseModel):
    task_id: int
    description: str
    reward: str  # base units, decimal string
    deadline: int
    creator: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None

class SyncRequest(BaseModel):
    from_block: Optional[int] = None
    reset: bool = False


# --- Serialization ---

def task_view(doc: dict) -> dict:
    """API shape of a task document: stored fields plus derived status."""
    status = task_status(doc)
    view = dict(doc)
    view["status"] = status.state.value
    try:
        view["reward_display"] = f"{from_base_units(doc.get('reward') or '0').normalize():f} {TOKEN_SYMBOL}"
    except ArithmeticError:
        view["reward_display"] = None
    return view


def sse_events(bus: TaskUpdateBus, q: _queue_mod.Queue, keepalive: float = SSE_KEEPALIVE):
    """Drain a subscriber queue as SSE frames. Unsubscribes when the client goes away."""
    try:
        while True:
            try:
                event = q.get(timeout=keepalive)
                yield f"data: {json_mod.dumps(event, default=str)}\n\n"
            except _queue_mod.Empty:
                yield ": keepalive\n\n"
    finally:
        bus.unsubscribe(q)


def _sse_response(bus: TaskUpdateBus, task_id: int | None, keepalive: float) -> StreamingResponse:
    try:
        q = bus.subscribe(task_id)
    except TooManySubscribers:
        raise HTTPException(503, "Too many SSE subscribers")
    return StreamingResponse(
        sse_events(bus, q, keepalive),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# --- App factory ---

def create_app(
    store: TaskStore | None = None,
    chain: LedgerBackend | None = None,
    mirror=None,
    loop=None,
    solver=None,
    bus: TaskUpdateBus | None = None,
    keepalive: float = SSE_KEEPALIVE,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    chain, mirror, loop and solver are optional; endpoints that need a
    missing one answer 503.
    """

    app = FastAPI(title="APTAN Agent Backend", version="1.0")

    _store = store or TaskStore()
    _bus = bus or TaskUpdateBus()
    _started = time.time()

    # Expose for testing
    app.state.store = _store
    app.state.bus = _bus
    app.state.chain = chain
    app.state.mirror = mirror
    app.state.loop = loop
    app.state.solver = solver

    def _require(component, name: str):
        if component is None:
            raise HTTPException(503, f"{name} not available")
        return component

    # --- Tasks ---

    @app.get("/api/tasks")
    def list_tasks(limit: int = 200):
        limit = max(1, min(limit, 1000))
        return {"tasks": [task_view(t) for t in _store.list(limit)]}

    @app.get("/api/tasks/pending")
    def pending_tasks():
        """Pending tasks straight from the contract (not the mirror)."""
        _chain = _require(chain, "Chain")
        try:
            ids = [int(i) for i in _chain.read_call("getPendingTasks")]
        except Exception as e:
            raise HTTPException(503, f"Chain unavailable: {e}")
        tasks = []
        for task_id in ids:
            doc = _store.get(task_id)
            tasks.append(task_view(doc) if doc else {"task_id": task_id, "status": "pending"})
        return {"pending": ids, "tasks": tasks}

    @app.get("/api/tasks/stream")
    def stream_all():
        """SSE stream of every task update.

        Usage:
            curl -N http://localhost:3001/api/tasks/stream
        """
        return _sse_response(_bus, None, keepalive)

    @app.get("/api/tasks/{task_id}")
    def get_task(task_id: int):
        doc = _store.get(task_id)
        if not doc:
            raise HTTPException(404, "Task not found")
        return task_view(doc)

    @app.get("/api/tasks/{task_id}/events")
    def stream_task(task_id: int):
        return _sse_response(_bus, task_id, keepalive)

    @app.post("/api/tasks")
    def create_task(req: CreateTaskRequest):
        """Optimistic write after the client sent createTask. Never touches completion fields."""
        try:
            reward = int(req.reward)
        except ValueError:
            raise HTTPException(400, "reward must be an integer amount in base units")
        if reward < 0:
            raise HTTPException(400, "reward must not be negative")
        if not req.description.strip():
            raise HTTPException(400, "description is required")

        fields = {
            "description": req.description,
            "reward": str(reward),
            "deadline": req.deadline,
            "creator": req.creator,
            "tx_hash": req.tx_hash,
            "block_number": req.block_number,
        }
        fields = {k: v for k, v in fields.items() if v is not None}
        existing = _store.get(req.task_id)
        if existing and existing["source"] == "chain" and existing.get("tx_hash"):
            # Already mirrored from its TaskCreated event
            return task_view(existing)
        if existing is None:
            fields["source"] = "client"
        doc = _store.upsert(req.task_id, fields)
        _bus.publish(req.task_id, {"event": "task_created", **fields})
        return task_view(doc)

    @app.post("/api/tasks/{task_id}/retry")
    def retry_task(task_id: int):
        _loop = _require(loop, "Fulfillment loop")
        try:
            outcome = _loop.retry_task(task_id)
        except TaskNotFound:
            raise HTTPException(404, "Task not found")
        except RevertError as e:
            raise HTTPException(400, e.reason)
        except Exception as e:
            if is_connectivity_error(e):
                raise HTTPException(503, f"Chain unavailable: {e}")
            raise HTTPException(500, f"Retry failed: {e}")
        result = outcome.to_dict()
        result["success"] = outcome.status in ("completed", "already_completed")
        if outcome.status in ("failed", "aborted"):
            raise HTTPException(500, result["error"] or "Retry failed")
        return result

    # --- Sync ---

    @app.post("/api/sync")
    def run_sync(req: Optional[SyncRequest] = None):
        _mirror = _require(mirror, "Mirror")
        req = req or SyncRequest()
        if req.reset:
            _mirror.reset(req.from_block)
            report = _mirror.sync_once()
        elif req.from_block is not None:
            report = _mirror.sync_range(req.from_block)
        else:
            report = _mirror.sync_once()
        if report is None:
            raise HTTPException(503, "Chain unavailable, sync made no progress")
        return {"report": report.to_dict(), "status": _mirror.status()}

    @app.get("/api/sync/status")
    def sync_status():
        return _require(mirror, "Mirror").status()

    # --- Health ---

    @app.get("/api/health")
    def health():
        result = {
            "status": "ok",
            "uptime": round(time.time() - _started, 1),
            "tasks": _store.count(),
            "agent": chain.agent_address if chain else None,
            "fulfillment": loop is not None,
            "subscribers": _bus.subscriber_count,
        }
        if chain is not None:
            try:
                result["block"] = chain.current_height()
            except Exception as e:
                result["status"] = "degraded"
                result["chain_error"] = str(e)
            result["rpc"] = getattr(chain, "active_url", None)
        if mirror is not None:
            state = _store.get_sync_state()
            result["last_synced_block"] = state["last_synced_block"] if state else None
        return result

    @app.get("/api/test-apis")
    def test_apis():
        """Probe each configured AI provider with a tiny prompt."""
        _solver = _require(solver, "Solver")
        results = _solver.probe()
        return {
            "providers": results,
            "configured": len(results),
            "any_ok": any(r.get("ok") for r in results),
        }

    return app
