# strava_cgm/cgm_service.py
# -----------------------------------------------------------------------------
# Sélection du client CGM d'un utilisateur.
#
# 🔹 `user.cgm_provider` décide de la source :
#     - 'librelink' → LibreLinkUpClient (email / password / région / patient)
#     - 'dexcom'    → DexcomShareClient (username / password / serveur)
#     - None        → aucun client (l'orchestrateur saute l'activité)
# 🔹 Les secrets sont déchiffrés ici, juste avant usage ; rien ne sort en clair
#    de ce module sauf vers le client HTTP.
#
# C'est le seul endroit du code qui connaît la liste des fournisseurs.
# -----------------------------------------------------------------------------
import logging
from typing import Optional

import httpx

from strava_cgm.cgm_common import CGMClient
from strava_cgm.dexcom_client import DexcomShareClient
from strava_cgm.encryption import decrypt
from strava_cgm.libre_client import LibreLinkUpClient
from strava_cgm.models import User
from strava_cgm.settings import settings

logger = logging.getLogger(__name__)


class CGMNotConfiguredError(RuntimeError):
    """Fournisseur déclaré mais identifiants absents (ou fournisseur inconnu)."""

    retryable = False


def build_cgm_client(
    user: User,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[CGMClient]:
    provider = user.cgm_provider
    if not provider:
        return None

    timeout = settings.HTTP_TIMEOUT_SECONDS

    try:
        if provider == "librelink":
            creds = user.librelink_credentials
            if not creds:
                raise CGMNotConfiguredError(f"user={user.id} : LibreLinkUp sélectionné sans identifiants")
            return LibreLinkUpClient(
                decrypt(creds.encrypted_email),
                decrypt(creds.encrypted_password),
                region=creds.region,
                patient_id=creds.patient_id,
                transport=transport,
                timeout=timeout,
            )

        if provider == "dexcom":
            creds = user.dexcom_credentials
            if not creds:
                raise CGMNotConfiguredError(f"user={user.id} : Dexcom sélectionné sans identifiants")
            return DexcomShareClient(
                decrypt(creds.encrypted_username),
                decrypt(creds.encrypted_password),
                server=creds.server,
                transport=transport,
                timeout=timeout,
            )
    except ValueError as e:
        # région / serveur enregistré inconnu
        raise CGMNotConfiguredError(f"user={user.id} : configuration {provider} invalide ({e})") from e

    raise CGMNotConfiguredError(f"Unknown CGM provider: {provider}")
