# strava_cgm/main.py
# -----------------------------------------------------------------------------
# Ce module assemble l'application FastAPI "Strava x CGM".
#
# 🔗 Connexions externes
#   - Strava : OAuth, webhooks, lecture / mise à jour des activités.
#   - LibreLinkUp & Dexcom Share : lecture des glycémies autour d'une activité.
#
# ⚙️ Orchestration
#   - Le webhook Strava ne fait que valider puis mettre en file.
#   - Une file de jobs (une instance, créée au `startup`, rangée dans
#     `app.state.job_queue`) appelle `enrichment.enrich_activity` pour chaque
#     activité créée, avec retries bornés et timeout par tentative.
#
# 🧩 API
#   - Identifiants CGM (test + enregistrement), réglages utilisateur,
#     données du rapport d'activité, abonnement webhook.
#   - Supervision : /health, /api/jobs/stats, /api/jobs/{job_id}.
# -----------------------------------------------------------------------------
import logging

from dotenv import load_dotenv
load_dotenv()

import uvicorn
from fastapi import Depends, FastAPI, HTTPException

from strava_cgm.database import init_db
from strava_cgm.dependencies import get_job_queue
from strava_cgm.enrichment import enrich_activity
from strava_cgm.job_queue import JobQueue
from strava_cgm.routers import (
    activities,
    auth_strava,
    cgm_credentials,
    subscriptions,
    users,
    webhooks,
)
from strava_cgm.settings import settings

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Strava x CGM")

app.include_router(webhooks.router)
app.include_router(auth_strava.router)
app.include_router(cgm_credentials.router)
app.include_router(users.router)
app.include_router(activities.router)
app.include_router(subscriptions.router)


def build_job_queue() -> JobQueue:
    return JobQueue(
        enrich_activity,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        retry_delay=settings.JOB_RETRY_DELAY_SECONDS,
        processing_timeout=settings.JOB_TIMEOUT_SECONDS,
        completed_ttl=settings.JOB_COMPLETED_TTL_SECONDS,
        failed_ttl=settings.JOB_FAILED_TTL_SECONDS,
    )


# -----------------------------------------------------------------------------
# Démarrage / arrêt
# -----------------------------------------------------------------------------

@app.on_event("startup")
def startup_event():
    # 1) Créer les tables si elles n'existent pas
    init_db()
    logger.info("[DB] Tables vérifiées/créées.")

    # 2) File de jobs (une file déjà posée, par ex. dans les tests, est conservée)
    if getattr(app.state, "job_queue", None) is None:
        app.state.job_queue = build_job_queue()
    logger.info("[Queue] File de jobs prête.")


@app.on_event("shutdown")
async def shutdown_event():
    queue = getattr(app.state, "job_queue", None)
    if queue is not None:
        await queue.close()
        app.state.job_queue = None


# -----------------------------------------------------------------------------
# Healthcheck + supervision de la file
# -----------------------------------------------------------------------------

@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/api/jobs/stats")
def job_stats(queue: JobQueue = Depends(get_job_queue)):
    return queue.get_stats()


@app.get("/api/jobs/{job_id}")
def job_detail(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    job = queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.as_dict()


# -----------------------------------------------------------------------------
# Lancement : `strava-cgm` ou `python -m strava_cgm.main`
# -----------------------------------------------------------------------------

def run():
    uvicorn.run(
        "strava_cgm.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
