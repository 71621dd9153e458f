# strava_cgm/routers/users.py
# -----------------------------------------------------------------------------
# Statut et réglages d'un utilisateur :
#
# 🔹 GET    /api/users/{user_id}           : profil + connexions Strava / CGM
# 🔹 GET    /api/users/{user_id}/settings  : seuils (mg/dL), unité, auto-update
# 🔹 POST   /api/users/{user_id}/settings  : mise à jour partielle des réglages
# 🔹 DELETE /api/users/{user_id}/cgm       : déconnexion du fournisseur CGM
# -----------------------------------------------------------------------------
import logging

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from strava_cgm.credentials import delete_cgm_credentials
from strava_cgm.database import get_db
from strava_cgm.glucose_units import normalize_unit
from strava_cgm.logic import Thresholds
from strava_cgm.models import User, UserSettings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


def _get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _settings_dict(s: UserSettings) -> dict:
    return {
        "lowThreshold": s.low_threshold,
        "highThreshold": s.high_threshold,
        "unit": s.unit,
        "enableAutoUpdate": s.enable_auto_update,
    }


@router.get("/{user_id}")
def user_status(user_id: int, db: Session = Depends(get_db)):
    user = _get_user_or_404(db, user_id)
    return {
        "id": user.id,
        "athleteId": str(user.athlete_id),
        "firstName": user.first_name,
        "lastName": user.last_name,
        "profilePicture": user.profile_picture,
        "cgmProvider": user.cgm_provider,
        "stravaConnected": user.strava_token is not None,
    }


@router.get("/{user_id}/settings")
def get_user_settings(user_id: int, db: Session = Depends(get_db)):
    user = _get_user_or_404(db, user_id)
    if user.settings is None:
        user.settings = UserSettings(
            low_threshold=70.0, high_threshold=180.0, unit="mmol/L", enable_auto_update=True
        )
        db.commit()
    return _settings_dict(user.settings)


@router.post("/{user_id}/settings")
def update_user_settings(user_id: int, body: dict = Body(...), db: Session = Depends(get_db)):
    """
    Mise à jour partielle. Les seuils sont toujours exprimés en mg/dL,
    quelle que soit l'unité d'affichage choisie.
    """
    user = _get_user_or_404(db, user_id)
    current = user.settings or UserSettings(
        low_threshold=70.0, high_threshold=180.0, unit="mmol/L", enable_auto_update=True
    )

    try:
        low = float(body.get("lowThreshold", current.low_threshold))
        high = float(body.get("highThreshold", current.high_threshold))
        Thresholds(low=low, high=high)
        unit = normalize_unit(body.get("unit"), default=current.unit)
        auto_update = body.get("enableAutoUpdate", current.enable_auto_update)
        if not isinstance(auto_update, bool):
            raise ValueError("enableAutoUpdate must be a boolean")
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    current.low_threshold = low
    current.high_threshold = high
    current.unit = unit
    current.enable_auto_update = auto_update

    if user.settings is None:
        user.settings = current
    db.commit()

    logger.info("[Settings] user=%s : réglages mis à jour", user_id)
    return {"success": True, "settings": _settings_dict(current)}


@router.delete("/{user_id}/cgm")
def disconnect_cgm(user_id: int, db: Session = Depends(get_db)):
    user = _get_user_or_404(db, user_id)
    delete_cgm_credentials(db, user)
    return {"success": True, "message": "CGM provider disconnected"}
