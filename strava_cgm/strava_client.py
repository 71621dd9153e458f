# strava_cgm/strava_client.py
import datetime as dt
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from strava_cgm.models import StravaToken
from strava_cgm.settings import settings

logger = logging.getLogger(__name__)

# -----------------------------
# 🌐 Configuration Strava
# -----------------------------
STRAVA_BASE_URL = "https://www.strava.com/api/v3"
STRAVA_OAUTH_AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
STRAVA_OAUTH_TOKEN_URL = "https://www.strava.com/oauth/token"
STRAVA_PUSH_SUBSCRIPTIONS_URL = f"{STRAVA_BASE_URL}/push_subscriptions"

STRAVA_SCOPES = "read,activity:read_all,activity:write"

# Limite de longueur de description acceptée par l'API
DESCRIPTION_MAX_LENGTH = 1800

# Marge avant expiration : on rafraîchit un peu avant l'échéance
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class StravaClientError(RuntimeError):
    retryable = True


class StravaAuthError(StravaClientError):
    """Token refusé ou refresh impossible : inutile de réessayer."""

    retryable = False


def _raise_for_status(r: httpx.Response) -> None:
    if r.status_code in (401, 403):
        raise StravaAuthError(f"Strava refused access (HTTP {r.status_code}): {r.text[:200]}")
    if r.status_code >= 400:
        raise StravaClientError(f"Strava API error: {r.status_code} - {r.text[:200]}")


def parse_strava_datetime(raw: str) -> dt.datetime:
    """'2024-06-10T07:30:00Z' → datetime UTC aware."""
    return dt.datetime.fromisoformat(raw.replace("Z", "+00:00")).astimezone(dt.timezone.utc)


class StravaClient:
    """
    Client Strava pour un access token donné. La gestion du token (refresh,
    persistance) est faite en amont par `ensure_access_token`.
    """

    def __init__(
        self,
        access_token: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.access_token = access_token
        self.transport = transport
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS

    # ======================================================
    # 🌍 Requêtes HTTP vers l’API Strava
    # ======================================================

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                r = await client.request(method, f"{STRAVA_BASE_URL}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise StravaClientError(f"Strava network error: {e}") from e
        _raise_for_status(r)
        return r.json()

    # ======================================================
    # 🚴 Fonctions publiques
    # ======================================================

    async def get_athlete(self) -> Dict[str, Any]:
        return await self._request("GET", "/athlete")

    async def list_activities(self, per_page: int = 1) -> List[Dict[str, Any]]:
        """Récupère les dernières activités Strava."""
        return await self._request("GET", "/athlete/activities", params={"per_page": per_page, "page": 1})

    async def get_activity(self, activity_id: int) -> Dict[str, Any]:
        """Récupère les détails d'une activité."""
        return await self._request("GET", f"/activities/{activity_id}")

    async def update_activity_description(self, activity_id: int, description: str) -> Dict[str, Any]:
        """Met à jour la description d'une activité Strava."""
        desc = (description or "")[:DESCRIPTION_MAX_LENGTH]
        return await self._request("PUT", f"/activities/{activity_id}", data={"description": desc})


# ======================================================
# 🔄 OAuth : obtention et refresh des tokens
# ======================================================

def authorize_url(state: Optional[str] = None) -> str:
    params = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "redirect_uri": settings.STRAVA_REDIRECT_URI,
        "response_type": "code",
        "approval_prompt": "auto",
        "scope": STRAVA_SCOPES,
    }
    if state:
        params["state"] = state
    return str(httpx.URL(STRAVA_OAUTH_AUTHORIZE_URL, params=params))


async def _token_request(data: Dict[str, Any], transport=None) -> Dict[str, Any]:
    payload = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "client_secret": settings.STRAVA_CLIENT_SECRET,
        **data,
    }
    try:
        async with httpx.AsyncClient(transport=transport, timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
            r = await client.post(STRAVA_OAUTH_TOKEN_URL, data=payload)
    except httpx.HTTPError as e:
        raise StravaClientError(f"Strava network error: {e}") from e
    if r.status_code in (400, 401):
        raise StravaAuthError(f"Strava token request rejected: {r.text[:200]}")
    _raise_for_status(r)
    return r.json()


async def exchange_code(code: str, *, transport=None) -> Dict[str, Any]:
    """Échange le code obtenu via /auth/strava/callback contre access/refresh tokens."""
    return await _token_request({"code": code, "grant_type": "authorization_code"}, transport)


async def refresh_access_token(refresh_token: str, *, transport=None) -> Dict[str, Any]:
    return await _token_request(
        {"grant_type": "refresh_token", "refresh_token": refresh_token}, transport
    )


def token_is_expired(token: StravaToken, now: Optional[float] = None) -> bool:
    now = time.time() if now is None else now
    return token.expires_at <= now + TOKEN_EXPIRY_MARGIN_SECONDS


async def ensure_access_token(db, token: StravaToken, *, transport=None, now: Optional[float] = None) -> str:
    """
    Renvoie un access token valide. S'il est expiré, on le rafraîchit et on
    commit en base avant de s'en servir : Strava invalide l'ancien refresh
    token dès qu'un nouveau est émis.
    """
    if not token_is_expired(token, now):
        return token.access_token

    data = await refresh_access_token(token.refresh_token, transport=transport)
    token.access_token = data["access_token"]
    token.refresh_token = data.get("refresh_token", token.refresh_token)
    token.expires_at = int(data["expires_at"])
    db.commit()
    logger.info("[Strava] Token rafraîchi pour user=%s", token.user_id)
    return token.access_token


# ======================================================
# 📬 Abonnement webhook (push subscriptions)
# ======================================================

def _app_credentials() -> Dict[str, str]:
    return {
        "client_id": settings.STRAVA_CLIENT_ID,
        "client_secret": settings.STRAVA_CLIENT_SECRET,
    }


async def _app_request(method: str, url: str, *, transport=None, **kwargs) -> httpx.Response:
    try:
        async with httpx.AsyncClient(transport=transport, timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
            r = await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        raise StravaClientError(f"Strava network error: {e}") from e
    _raise_for_status(r)
    return r


async def list_subscriptions(*, transport=None) -> List[Dict[str, Any]]:
    r = await _app_request("GET", STRAVA_PUSH_SUBSCRIPTIONS_URL, transport=transport, params=_app_credentials())
    return r.json()


async def create_subscription(callback_url: str, verify_token: str, *, transport=None) -> Dict[str, Any]:
    # Strava appelle notre GET /webhooks/strava pendant cette requête
    data = {**_app_credentials(), "callback_url": callback_url, "verify_token": verify_token}
    r = await _app_request("POST", STRAVA_PUSH_SUBSCRIPTIONS_URL, transport=transport, data=data)
    return r.json()


async def delete_subscription(subscription_id: int, *, transport=None) -> None:
    await _app_request(
        "DELETE",
        f"{STRAVA_PUSH_SUBSCRIPTIONS_URL}/{subscription_id}",
        transport=transport,
        params=_app_credentials(),
    )
