from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from .api_models import DesiredStateRequest, RollbackRequest
from .errors import InvalidDesiredState, InvalidTransition, NotFound
from .models import NoOp, RolloutState, UnitRecord, UnitTemplate, action_to_dict
from .orchestrator import Orchestrator


def _state(st: RolloutState) -> dict[str, Any]:
    return asdict(st)


def _unit(u: UnitRecord) -> dict[str, Any]:
    return asdict(u)


def _template(revision: int, tpl: UnitTemplate) -> dict[str, Any]:
    d = asdict(tpl)
    d["env"] = dict(tpl.env)
    return {"revision": revision, "template": d}


def create_app(orchestrator: Orchestrator | None = None, start_loop: bool = True) -> FastAPI:
    orch = orchestrator if orchestrator is not None else Orchestrator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_loop:
            orch.start()
        yield
        orch.stop()

    app = FastAPI(title="Fleet Reconciler", lifespan=lifespan)
    app.state.orchestrator = orch

    def _lookup(fn, *args):
        try:
            return fn(*args)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "healthy", "driver_available": orch.driver_available()}

    @app.post("/lineages", status_code=202)
    def submit(req: DesiredStateRequest) -> dict[str, Any]:
        try:
            desired = req.to_desired()
            st = orch.submit(desired)
        except (InvalidDesiredState, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _state(st)

    @app.get("/lineages")
    def lineages() -> list[dict[str, Any]]:
        out = []
        for name in orch.lineages():
            st = orch.rollout_state(name)
            out.append({"lineage": name, "phase": st.phase.value, "version": st.target_version, "stalled": st.stalled})
        return out

    @app.get("/lineages/{name}/rollout")
    def rollout(name: str) -> dict[str, Any]:
        return _state(_lookup(orch.rollout_state, name))

    @app.get("/lineages/{name}/units")
    def units(name: str) -> list[dict[str, Any]]:
        return [_unit(u) for u in _lookup(orch.units, name)]

    @app.get("/lineages/{name}/history")
    def history(name: str) -> list[dict[str, Any]]:
        return [_template(rev, tpl) for rev, tpl in _lookup(orch.history, name)]

    @app.get("/lineages/{name}/plan")
    def plan(name: str) -> dict[str, Any]:
        actions = _lookup(orch.plan, name) or [NoOp(reason="converged or halted")]
        return {"lineage": name, "actions": [action_to_dict(a) for a in actions]}

    @app.post("/lineages/{name}/pause")
    def pause(name: str) -> dict[str, Any]:
        return _state(_lookup(orch.pause, name))

    @app.post("/lineages/{name}/resume")
    def resume(name: str) -> dict[str, Any]:
        return _state(_lookup(orch.resume, name))

    @app.post("/lineages/{name}/rollback")
    def rollback(name: str, req: RollbackRequest | None = None) -> dict[str, Any]:
        revision = req.revision if req else None
        return _state(_lookup(orch.rollback, name, revision))

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), lineage: str | None = None) -> list[dict[str, Any]]:
        return orch.events(limit=limit, lineage=lineage)

    return app
