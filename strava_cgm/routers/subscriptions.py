# strava_cgm/routers/subscriptions.py
# -----------------------------------------------------------------------------
# Gestion de l'abonnement webhook Strava (un seul par application).
#
# GET    /api/strava/subscription        : liste des abonnements
# POST   /api/strava/subscription        : crée l'abonnement s'il n'existe pas
# DELETE /api/strava/subscription?id=... : supprime un abonnement
# -----------------------------------------------------------------------------
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from strava_cgm.dependencies import get_strava_transport
from strava_cgm.settings import settings
from strava_cgm.strava_client import (
    StravaClientError,
    create_subscription,
    delete_subscription,
    list_subscriptions,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/strava/subscription", tags=["strava-subscription"])


def webhook_callback_url() -> str:
    return f"{settings.APP_BASE_URL.rstrip('/')}/webhooks/strava"


@router.get("")
async def get_subscriptions(transport=Depends(get_strava_transport)):
    try:
        subscriptions = await list_subscriptions(transport=transport)
    except StravaClientError as e:
        logger.error("[Strava] Lecture des abonnements impossible : %s", e)
        return JSONResponse({"error": str(e)}, status_code=502)
    return {"subscriptions": subscriptions}


@router.post("")
async def subscribe(transport=Depends(get_strava_transport)):
    if not settings.STRAVA_VERIFY_TOKEN:
        return JSONResponse({"error": "STRAVA_VERIFY_TOKEN is not configured"}, status_code=503)

    try:
        existing = await list_subscriptions(transport=transport)
        if existing:
            return {"message": "Subscription already exists", "subscription": existing[0]}

        subscription = await create_subscription(
            webhook_callback_url(), settings.STRAVA_VERIFY_TOKEN, transport=transport
        )
    except StravaClientError as e:
        logger.error("[Strava] Création de l'abonnement impossible : %s", e)
        return JSONResponse({"error": str(e)}, status_code=502)

    logger.info("[Strava] Abonnement webhook créé : %s", subscription.get("id"))
    return {"message": "Subscription created successfully", "subscription": subscription}


@router.delete("")
async def unsubscribe(
    subscription_id: Optional[int] = Query(default=None, alias="id"),
    transport=Depends(get_strava_transport),
):
    if subscription_id is None:
        return JSONResponse({"error": "Subscription ID is required"}, status_code=400)

    try:
        await delete_subscription(subscription_id, transport=transport)
    except StravaClientError as e:
        logger.error("[Strava] Suppression de l'abonnement %s impossible : %s", subscription_id, e)
        return JSONResponse({"error": str(e)}, status_code=502)

    return {"message": "Subscription deleted successfully"}
