# strava_cgm/routers/webhooks.py
# -----------------------------------------------------------------------------
# Réception des webhooks Strava.
#
# GET  /webhooks/strava : handshake d'abonnement (hub.challenge).
# POST /webhooks/strava : événement. Signature vérifiée sur le corps brut,
#      puis seuls les activity/create sont mis en file. La réponse part
#      tout de suite : le traitement est fait par le worker de la file.
# -----------------------------------------------------------------------------
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from strava_cgm.dependencies import get_job_queue
from strava_cgm.job_queue import JobQueue
from strava_cgm.settings import settings
from strava_cgm.webhook import (
    SIGNATURE_HEADER,
    classify_event,
    event_summary,
    job_from_event,
    job_id_for,
    validate_challenge,
    verify_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])  # 🔴 PAS de prefix ici


@router.get("/webhooks/strava")
async def strava_webhook_verify(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
):
    if not hub_mode or not hub_verify_token or not hub_challenge:
        return JSONResponse({"error": "Missing required parameters"}, status_code=400)

    if not settings.STRAVA_VERIFY_TOKEN:
        logger.error("[Webhook] STRAVA_VERIFY_TOKEN absent, handshake impossible")
        return JSONResponse({"error": "Webhook verification is not configured"}, status_code=503)

    challenge = validate_challenge(hub_mode, hub_verify_token, hub_challenge, settings.STRAVA_VERIFY_TOKEN)
    if challenge is None:
        logger.warning("[Webhook] Handshake refusé (mode=%s)", hub_mode)
        return JSONResponse({"error": "Invalid verification token"}, status_code=403)

    logger.info("[Webhook] Handshake Strava validé")
    return {"hub.challenge": challenge}


@router.post("/webhooks/strava")
async def strava_webhook_event(request: Request, queue: JobQueue = Depends(get_job_queue)):
    raw = await request.body()

    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_signature(
        raw,
        signature,
        settings.STRAVA_CLIENT_SECRET,
        require_signature=not settings.STRAVA_ALLOW_UNSIGNED,
    ):
        logger.warning("[Webhook] Signature Strava invalide ou absente")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        event = json.loads(raw)
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(event, dict):
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    logger.info("[Webhook] Événement reçu : %s", event_summary(event))

    try:
        accepted, reason = classify_event(event)
        if not accepted:
            return {"status": "ignored", "reason": reason}

        job_id = job_id_for(event)
        queue.add(job_id, job_from_event(event))
    except Exception:
        logger.exception("[Webhook] Erreur de traitement de l'événement")
        return JSONResponse({"error": "Processing failed"}, status_code=500)

    logger.info("[Webhook] Activité %s mise en file (job %s)", event["object_id"], job_id)
    return {"status": "queued", "jobId": job_id}
