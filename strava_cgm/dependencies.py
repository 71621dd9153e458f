# strava_cgm/dependencies.py
# -----------------------------------------------------------------------------
# Dépendances FastAPI partagées par les routers.
#
# 🔹 get_job_queue : la file créée au démarrage (app.state.job_queue).
# 🔹 get_cgm_transport / get_strava_transport : transport httpx sortant,
#    None en production ; surchargés dans les tests (httpx.MockTransport).
# -----------------------------------------------------------------------------
from typing import Optional

import httpx
from fastapi import HTTPException, Request

from strava_cgm.job_queue import JobQueue


def get_job_queue(request: Request) -> JobQueue:
    queue = getattr(request.app.state, "job_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Job queue is not running")
    return queue


def get_cgm_transport() -> Optional[httpx.AsyncBaseTransport]:
    return None


def get_strava_transport() -> Optional[httpx.AsyncBaseTransport]:
    return None
