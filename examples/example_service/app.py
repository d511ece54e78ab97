from __future__ import annotations

import os
import time

from fastapi import FastAPI, HTTPException


VERSION = os.getenv("VERSION", "dev")
UNIT_ID = os.getenv("UNIT_ID", "local")
STARTUP_DELAY_S = float(os.getenv("STARTUP_DELAY_S", "0"))

app = FastAPI(title=f"Example Unit {VERSION}")

APP_STATE = {"started_at": time.time(), "dead": False, "unready": False}


@app.get("/startup")
def startup() -> dict[str, str]:
    if time.time() - APP_STATE["started_at"] < STARTUP_DELAY_S:
        raise HTTPException(status_code=503, detail="Starting")
    return {"status": "started"}


@app.get("/healthz")
def healthz() -> dict[str, str]:
    if APP_STATE["dead"]:
        raise HTTPException(status_code=500, detail="Dead")
    return {"status": "healthy"}


@app.get("/ready")
def ready() -> dict[str, str]:
    if APP_STATE["unready"] or APP_STATE["dead"]:
        raise HTTPException(status_code=503, detail="NotReady")
    return {"status": "ready"}


@app.get("/version")
def version() -> dict[str, str]:
    return {"version": VERSION, "unit": UNIT_ID}


# Fault injection, to watch probes, restarts and stalled rollouts.


@app.post("/simulate/dead")
def simulate_dead() -> dict[str, str]:
    APP_STATE["dead"] = True
    return {"msg": "liveness will fail"}


@app.post("/simulate/unready")
def simulate_unready() -> dict[str, str]:
    APP_STATE["unready"] = True
    return {"msg": "readiness will fail"}


@app.post("/simulate/reset")
def simulate_reset() -> dict[str, str]:
    APP_STATE["dead"] = False
    APP_STATE["unready"] = False
    return {"msg": "back to normal"}
