# strava_cgm/routers/cgm_credentials.py
# -----------------------------------------------------------------------------
# API des identifiants CGM (LibreLinkUp / Dexcom Share).
#
# 🔹 POST /api/{provider}/test : login + petite lecture, rien n'est écrit.
# 🔹 POST /api/{provider}/credentials : chiffre et enregistre les identifiants,
#    bascule `cgm_provider` et supprime ceux de l'autre fournisseur.
# -----------------------------------------------------------------------------
import logging

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from strava_cgm.credentials import save_dexcom_credentials, save_librelink_credentials
from strava_cgm.database import get_db
from strava_cgm.dependencies import get_cgm_transport
from strava_cgm.dexcom_client import DEFAULT_DEXCOM_SERVER, DEXCOM_SERVERS, check_dexcom_connection
from strava_cgm.encryption import EncryptionError
from strava_cgm.libre_client import DEFAULT_LIBRE_REGION, LLU_API_ENDPOINTS, check_libre_connection
from strava_cgm.models import User

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cgm-credentials"])


def _error(message: str, status_code: int = 400, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def _get_user(db: Session, user_id):
    try:
        return db.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


def _libre_region(body: dict):
    region = (body.get("region") or DEFAULT_LIBRE_REGION).upper()
    return region if region in LLU_API_ENDPOINTS else None


# -----------------------------------------------------------------------------
# LibreLinkUp
# -----------------------------------------------------------------------------
@router.post("/api/librelink/test")
async def librelink_test(body: dict = Body(...), transport=Depends(get_cgm_transport)):
    email, password = body.get("email"), body.get("password")
    if not email or not password:
        return _error("Email and password are required")

    region = _libre_region(body)
    if region is None:
        return _error("Invalid region")

    result = await check_libre_connection(
        email, password, region, body.get("patientId"), transport=transport
    )
    if not result.success:
        extra = {"connections": result.connections} if result.connections else {}
        return _error(result.message, **extra)

    return {
        "success": True,
        "message": result.message,
        "readingsCount": result.readings_count,
        "region": result.region,
    }


@router.post("/api/librelink/credentials")
def librelink_credentials(body: dict = Body(...), db: Session = Depends(get_db)):
    user_id, email, password = body.get("userId"), body.get("email"), body.get("password")
    if not user_id or not email or not password:
        return _error("userId, email, and password are required")

    region = _libre_region(body)
    if region is None:
        return _error("Invalid region")

    user = _get_user(db, user_id)
    if not user:
        return _error("User not found", status_code=404)

    try:
        save_librelink_credentials(db, user, email, password, region, body.get("patientId"))
    except EncryptionError as e:
        logger.error("[CGM] Chiffrement impossible : %s", e)
        return _error("Credential encryption is not configured", status_code=503)

    return {"success": True, "message": "LibreLinkUp credentials saved successfully"}


# -----------------------------------------------------------------------------
# Dexcom Share
# -----------------------------------------------------------------------------
@router.post("/api/dexcom/test")
async def dexcom_test(body: dict = Body(...), transport=Depends(get_cgm_transport)):
    username, password = body.get("username"), body.get("password")
    if not username or not password:
        return _error("Username and password are required")

    server = body.get("server") or DEFAULT_DEXCOM_SERVER
    if server not in DEXCOM_SERVERS:
        return _error("Invalid server")

    result = await check_dexcom_connection(username, password, server, transport=transport)
    if not result.success:
        return _error(result.message)

    return {
        "success": True,
        "message": result.message,
        "readingsCount": result.readings_count,
    }


@router.post("/api/dexcom/credentials")
def dexcom_credentials(body: dict = Body(...), db: Session = Depends(get_db)):
    user_id, username, password = body.get("userId"), body.get("username"), body.get("password")
    if not user_id or not username or not password:
        return _error("userId, username, and password are required")

    server = body.get("server") or DEFAULT_DEXCOM_SERVER
    if server not in DEXCOM_SERVERS:
        return _error("Invalid server")

    user = _get_user(db, user_id)
    if not user:
        return _error("User not found", status_code=404)

    try:
        save_dexcom_credentials(db, user, username, password, server)
    except EncryptionError as e:
        logger.error("[CGM] Chiffrement impossible : %s", e)
        return _error("Credential encryption is not configured", status_code=503)

    return {"success": True, "message": "Dexcom credentials saved successfully"}
