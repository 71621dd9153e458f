# strava_cgm/webhook.py
# -----------------------------------------------------------------------------
# Validation des webhooks Strava (sans dépendance HTTP) :
#
# 🔹 Handshake d'abonnement : hub.mode=subscribe + hub.verify_token attendu
#    → on renvoie hub.challenge tel quel.
# 🔹 Signature : HMAC-SHA256 hex du corps brut, clé = client secret,
#    comparée en temps constant (hmac.compare_digest).
# 🔹 Classification : seuls les événements activity/create partent en file.
# -----------------------------------------------------------------------------
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

SUBSCRIBE_MODE = "subscribe"
SIGNATURE_HEADER = "strava-signature"

IGNORED_NOT_ACTIVITY = "not_activity"
IGNORED_NOT_CREATE = "not_create"
IGNORED_MISSING_IDS = "missing_ids"


@dataclass(frozen=True)
class ActivityJob:
    """Charge utile d'un job : ce que l'orchestrateur reçoit."""

    activity_id: int
    athlete_id: int
    event_time: Optional[int] = None


def validate_challenge(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected: str,
) -> Optional[str]:
    """Renvoie le challenge si le handshake est valide, sinon None."""
    if not expected:
        raise ValueError("STRAVA_VERIFY_TOKEN is required")
    if mode == SUBSCRIBE_MODE and token is not None and hmac.compare_digest(token, expected):
        return challenge
    return None


def compute_signature(body: Union[bytes, str], secret: str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(
    body: Union[bytes, str],
    signature: Optional[str],
    secret: str,
    require_signature: bool = True,
) -> bool:
    if not secret:
        raise ValueError("STRAVA_CLIENT_SECRET is required for signature verification")
    if not signature:
        if require_signature:
            return False
        logger.warning("[Webhook] Requête sans signature acceptée (STRAVA_ALLOW_UNSIGNED)")
        return True
    expected = compute_signature(body, secret)
    return hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected.encode("utf-8"))


def classify_event(event: Mapping[str, Any]) -> Tuple[bool, Optional[str]]:
    """(True, None) si l'événement doit être traité, sinon (False, raison)."""
    if event.get("object_type") != "activity":
        return False, IGNORED_NOT_ACTIVITY
    if event.get("aspect_type") != "create":
        return False, IGNORED_NOT_CREATE
    if not event.get("object_id") or not event.get("owner_id"):
        return False, IGNORED_MISSING_IDS
    return True, None


def job_id_for(event: Mapping[str, Any]) -> str:
    return f"{event['owner_id']}-{event['object_id']}"


def job_from_event(event: Mapping[str, Any]) -> ActivityJob:
    return ActivityJob(
        activity_id=int(event["object_id"]),
        athlete_id=int(event["owner_id"]),
        event_time=int(event["event_time"]) if event.get("event_time") is not None else None,
    )


def event_summary(event: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: event.get(k) for k in ("object_type", "aspect_type", "object_id", "owner_id")}
