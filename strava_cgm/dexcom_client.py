# strava_cgm/dexcom_client.py
# -----------------------------------------------------------------------------
# Client Dexcom Share pour l'application "Strava x CGM".
#
# Rôles :
#   🔹 Authentification en deux temps :
#        1. (applicationId, username, password) → accountId
#        2. (applicationId, accountId, password) → sessionId
#      Dexcom répond parfois HTTP 200 avec l'UUID nul
#      "00000000-0000-0000-0000-000000000000" : ce sont des identifiants
#      refusés, à traiter comme tels.
#   🔹 Lecture des glycémies : pas de requête par plage côté Dexcom, seulement
#      "les N dernières minutes" (max 1440 min / 288 points). Pour une plage
#      arbitraire on calcule les minutes écoulées depuis `start`, on lit, puis
#      on filtre côté client sur [start, end].
#   🔹 Timestamps au format "Date(1718000000000)" (ms epoch), parfois suivis
#      d'un offset "Date(1718000000000-0400)" ignoré (l'epoch est déjà UTC).
#
# Sortie : liste de GlucoseReading (UTC aware, mg/dL), triée par timestamp.
# -----------------------------------------------------------------------------
import datetime as dt
import logging
import math
import re
from typing import Any, Callable, List, Optional

import httpx

from strava_cgm.cgm_common import (
    CGMAuthenticationError,
    CGMClient,
    CGMConnectionError,
    CGMError,
    CGMProviderError,
    ConnectionTestResult,
    GlucoseReading,
    ensure_utc,
)

logger = logging.getLogger(__name__)

# Application ID public de l'app Dexcom Share
DEXCOM_APP_ID = "d89443d2-327c-4a6f-89e5-496bbb0317db"

DEXCOM_SERVERS = {
    "share2.dexcom.com": "https://share2.dexcom.com/ShareWebServices/Services",         # US
    "shareous1.dexcom.com": "https://shareous1.dexcom.com/ShareWebServices/Services",   # hors US
}
DEFAULT_DEXCOM_SERVER = "shareous1.dexcom.com"

NULL_UUID = "00000000-0000-0000-0000-000000000000"

MAX_MINUTES = 1440
MAX_COUNT = 288

USER_AGENT = "Dexcom Share/3.0.2.11"

# Codes d'erreur Dexcom qui signifient "mauvais identifiants"
AUTH_ERROR_CODES = {
    "AccountPasswordInvalid",
    "SSO_AuthenticateAccountNotFound",
    "SSO_AuthenticatePasswordInvalid",
    "SSO_AuthenticateMaxAttemptsExceeed",
}

_DATE_RE = re.compile(r"Date\((-?\d+)([+-]\d{4})?\)")


class DexcomClientError(CGMError):
    pass


def parse_dexcom_timestamp(raw: str) -> dt.datetime:
    m = _DATE_RE.search(raw or "")
    if not m:
        raise DexcomClientError(f"Invalid Dexcom timestamp format: {raw}")
    return dt.datetime.fromtimestamp(int(m.group(1)) / 1000, tz=dt.timezone.utc)


class DexcomShareClient(CGMClient):
    """
    Client Dexcom Share associé à un compte (username / password).

        cli = DexcomShareClient(username, password, server="shareous1.dexcom.com")
        await cli.login()
        readings = await cli.fetch_readings(start, end)
    """

    provider = "dexcom"

    def __init__(
        self,
        username: str,
        password: str,
        server: str = DEFAULT_DEXCOM_SERVER,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 20.0,
        now: Optional[Callable[[], dt.datetime]] = None,
    ):
        super().__init__(transport=transport, timeout=timeout)
        if server not in DEXCOM_SERVERS:
            raise ValueError(f"Unknown Dexcom server: {server}")
        self.username = username
        self.password = password
        self.server = server
        self.base_url = DEXCOM_SERVERS[server]
        self.session_id: Optional[str] = None
        self._now = now or (lambda: dt.datetime.now(dt.timezone.utc))

    # ----------------------------------------------------------------------
    # HTTP
    # ----------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        try:
            async with self._http() as client:
                resp = await client.request(
                    method,
                    f"{self.base_url}{endpoint}",
                    headers=headers,
                    json=json,
                    params=params,
                )
        except httpx.HTTPError as e:
            raise CGMConnectionError(f"Dexcom network error: {e}") from e

        if resp.status_code != 200:
            self._raise_for_error(resp)

        text = resp.text
        if not text:
            return ""
        try:
            return resp.json()
        except ValueError:
            return text

    def _raise_for_error(self, resp: httpx.Response) -> None:
        code = None
        try:
            body = resp.json()
            if isinstance(body, dict):
                code = body.get("Code")
        except ValueError:
            pass

        if code in AUTH_ERROR_CODES:
            raise CGMAuthenticationError(f"Dexcom rejected the credentials ({code})")
        if resp.status_code >= 500 or resp.status_code == 429:
            raise CGMConnectionError(f"Dexcom API error: {resp.status_code} - {resp.text[:200]}")
        raise CGMProviderError(f"Dexcom API error: {resp.status_code} - {resp.text[:200]}")

    # ----------------------------------------------------------------------
    # Authentification en deux temps
    # ----------------------------------------------------------------------
    async def login(self) -> None:
        account_id = await self._request(
            "POST",
            "/General/AuthenticatePublisherAccount",
            json={
                "applicationId": DEXCOM_APP_ID,
                "accountName": self.username,
                "password": self.password,
            },
        )
        if not account_id or account_id == NULL_UUID:
            raise CGMAuthenticationError("Invalid credentials")

        session_id = await self._request(
            "POST",
            "/General/LoginPublisherAccountById",
            json={
                "applicationId": DEXCOM_APP_ID,
                "accountId": account_id,
                "password": self.password,
            },
        )
        if not session_id or session_id == NULL_UUID:
            raise CGMAuthenticationError("Failed to obtain session")

        self.session_id = session_id
        logger.info("[Dexcom] Session ouverte sur %s", self.server)

    @property
    def is_authenticated(self) -> bool:
        return self.session_id is not None

    # ----------------------------------------------------------------------
    # Lecture des données CGM
    # ----------------------------------------------------------------------
    async def get_latest_readings(
        self,
        minutes: int = MAX_MINUTES,
        max_count: int = MAX_COUNT,
    ) -> List[GlucoseReading]:
        if not self.session_id:
            await self.login()

        params = {
            "sessionId": self.session_id,
            "minutes": max(1, min(int(minutes), MAX_MINUTES)),
            "maxCount": max(1, min(int(max_count), MAX_COUNT)),
        }
        data = await self._request(
            "GET", "/Publisher/ReadPublisherLatestGlucoseValues", params=params
        )
        if not isinstance(data, list):
            return []

        out: List[GlucoseReading] = []
        for it in data:
            try:
                ts = parse_dexcom_timestamp(it.get("WT") or it.get("ST") or it.get("DT"))
                value = it.get("Value")
                if value is None:
                    continue
                out.append(GlucoseReading(timestamp=ts, value=float(value), trend=it.get("Trend")))
            except (DexcomClientError, TypeError, ValueError, AttributeError) as e:
                logger.warning("[Dexcom] Point EGV ignoré (%s) : %s", it, e)
                continue

        out.sort(key=lambda r: r.timestamp)
        return out

    async def fetch_readings(self, start: dt.datetime, end: dt.datetime) -> List[GlucoseReading]:
        start = ensure_utc(start)
        end = ensure_utc(end)

        minutes_since_start = math.ceil((self._now() - start).total_seconds() / 60)
        if minutes_since_start > MAX_MINUTES:
            logger.warning(
                "[Dexcom] Fenêtre demandée (%s min) > %s min : début de fenêtre tronqué",
                minutes_since_start,
                MAX_MINUTES,
            )

        readings = await self.get_latest_readings(minutes_since_start, MAX_COUNT)
        return [r for r in readings if start <= r.timestamp <= end]

    # ----------------------------------------------------------------------
    # Test des identifiants (aucune écriture)
    # ----------------------------------------------------------------------
    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self.login()
            readings = await self.get_latest_readings(60, 12)  # dernière heure
        except CGMAuthenticationError as e:
            if "session" in str(e).lower():
                message = "Failed to authenticate. Please check your credentials."
            else:
                message = "Invalid username or password"
            return ConnectionTestResult(success=False, message=message)
        except CGMError as e:
            return ConnectionTestResult(success=False, message=str(e))

        return ConnectionTestResult(
            success=True,
            message=f"Connection successful - Found {len(readings)} glucose readings",
            readings_count=len(readings),
        )


async def check_dexcom_connection(
    username: str,
    password: str,
    server: str = DEFAULT_DEXCOM_SERVER,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectionTestResult:
    cli = DexcomShareClient(username, password, server, transport=transport)
    return await cli.test_connection()
