# strava_cgm/routers/auth_strava.py
# -----------------------------------------------------------------------------
# Connexion Strava (OAuth).
#
# GET /auth/strava          → redirection vers la page d'autorisation Strava.
# GET /auth/strava/callback → échange du code, upsert User + StravaToken +
#                             réglages par défaut, puis retour vers l'app.
# -----------------------------------------------------------------------------
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from strava_cgm.database import get_db
from strava_cgm.dependencies import get_strava_transport
from strava_cgm.models import StravaToken, User, UserSettings
from strava_cgm.settings import settings
from strava_cgm.strava_client import StravaClientError, authorize_url, exchange_code

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth-strava"])


def _app_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(f"{settings.APP_BASE_URL.rstrip('/')}/strava?{query}")


@router.get("/auth/strava")
def auth_strava():
    """Démarre le flux OAuth Strava."""
    return RedirectResponse(authorize_url())


def _upsert_user(db: Session, athlete: dict) -> User:
    user = db.query(User).filter(User.athlete_id == int(athlete["id"])).first()
    if user is None:
        user = User(athlete_id=int(athlete["id"]))
        db.add(user)
    user.first_name = athlete.get("firstname")
    user.last_name = athlete.get("lastname")
    user.profile_picture = athlete.get("profile_medium") or athlete.get("profile")
    return user


@router.get("/auth/strava/callback")
async def auth_strava_callback(
    code: str = "",
    error: str = "",
    scope: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    transport=Depends(get_strava_transport),
):
    """
    Callback Strava : reçoit le code d'autorisation, enregistre les tokens
    et crée l'utilisateur (avec des réglages par défaut) s'il est nouveau.
    """
    if error:
        logger.warning("[Strava] Erreur OAuth : %s", error)
        return _app_redirect(f"error={error}")
    if not code:
        return _app_redirect("error=missing_code")

    try:
        data = await exchange_code(code, transport=transport)
    except StravaClientError as e:
        logger.error("[Strava] Échange du code impossible : %s", e)
        return _app_redirect("error=callback_failed")

    athlete = data.get("athlete") or {}
    if not athlete.get("id"):
        logger.error("[Strava] Réponse OAuth sans athlète")
        return _app_redirect("error=callback_failed")

    try:
        user = _upsert_user(db, athlete)

        token = user.strava_token
        if token is None:
            token = StravaToken()
            user.strava_token = token
        token.access_token = data["access_token"]
        token.refresh_token = data["refresh_token"]
        token.expires_at = int(data["expires_at"])
        token.scope = scope

        if user.settings is None:
            user.settings = UserSettings(
                low_threshold=70.0, high_threshold=180.0, unit="mmol/L", enable_auto_update=True
            )

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("[Strava] Tokens enregistrés pour user=%s (athlete %s)", user.id, athlete["id"])
    return _app_redirect(f"userId={user.id}&connected=true")
