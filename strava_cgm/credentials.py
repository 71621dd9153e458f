# strava_cgm/credentials.py
# -----------------------------------------------------------------------------
# Écriture des identifiants CGM d'un utilisateur.
#
# Un utilisateur n'a qu'un fournisseur CGM à la fois. Enregistrer l'un
# supprime l'autre, et `user.cgm_provider` est mis à jour dans la même
# transaction : soit tout est écrit, soit rien (rollback).
# -----------------------------------------------------------------------------
import logging
from typing import Optional

from sqlalchemy.orm import Session

from strava_cgm.encryption import encrypt
from strava_cgm.models import DexcomCredentials, LibreLinkUpCredentials, User

logger = logging.getLogger(__name__)


def save_librelink_credentials(
    db: Session,
    user: User,
    email: str,
    password: str,
    region: str = "EU",
    patient_id: Optional[str] = None,
) -> LibreLinkUpCredentials:
    try:
        creds = user.librelink_credentials
        if creds is None:
            creds = LibreLinkUpCredentials()
            user.librelink_credentials = creds
        creds.encrypted_email = encrypt(email)
        creds.encrypted_password = encrypt(password)
        creds.region = region
        creds.patient_id = patient_id or None

        if user.dexcom_credentials is not None:
            db.delete(user.dexcom_credentials)
        user.cgm_provider = "librelink"

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(user)
    logger.info("[CGM] user=%s : identifiants LibreLinkUp enregistrés (région %s)", user.id, region)
    return user.librelink_credentials


def save_dexcom_credentials(
    db: Session,
    user: User,
    username: str,
    password: str,
    server: str = "shareous1.dexcom.com",
) -> DexcomCredentials:
    try:
        creds = user.dexcom_credentials
        if creds is None:
            creds = DexcomCredentials()
            user.dexcom_credentials = creds
        creds.encrypted_username = encrypt(username)
        creds.encrypted_password = encrypt(password)
        creds.server = server

        if user.librelink_credentials is not None:
            db.delete(user.librelink_credentials)
        user.cgm_provider = "dexcom"

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(user)
    logger.info("[CGM] user=%s : identifiants Dexcom enregistrés (%s)", user.id, server)
    return user.dexcom_credentials


def delete_cgm_credentials(db: Session, user: User) -> None:
    try:
        if user.librelink_credentials is not None:
            db.delete(user.librelink_credentials)
        if user.dexcom_credentials is not None:
            db.delete(user.dexcom_credentials)
        user.cgm_provider = None
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(user)
    logger.info("[CGM] user=%s : fournisseur CGM déconnecté", user.id)
