# strava_cgm/libre_client.py
# -----------------------------------------------------------------------------
# Ce module gère la connexion à LibreLinkUp et la récupération des données
# de glycémie pour un compte donné, directement via l'API HTTP (httpx).
#
# Fonctionnement :
#
# 🔹 Login :
#    - POST /llu/auth/login → token Bearer.
#    - La réponse peut indiquer que le compte vit dans une autre région
#      ({"redirect": true, "region": "us"}) : on relance le login sur l'URL
#      de cette région. Au plus MAX_REGION_REDIRECTS sauts, jamais de boucle.
#
# 🔹 Connexions (patients suivis) :
#    - GET /llu/connections. Si plusieurs patients et aucun patient_id choisi,
#      on lève CGMSelectionRequiredError avec la liste plutôt que de deviner.
#
# 🔹 Lecture :
#    - GET /llu/connections/{patientId}/graph → ~12 h de points.
#    - Conversion FactoryTimestamp (UTC, "M/D/YYYY h:mm:ss AM") → datetime UTC,
#      filtrage sur [start, end], tri par timestamp.
#
# 🔹 Erreurs :
#    - status != 0 dans une réponse 200 → CGMProviderError
#      (status 2 = mauvais identifiants → CGMAuthenticationError).
#    - 429 / Cloudflare 1015 → CGMConnectionError (rate limit, on réessaiera).
# -----------------------------------------------------------------------------
import datetime as dt
import hashlib
import logging
from typing import Any, Dict, List, Optional

import httpx

from strava_cgm.cgm_common import (
    CGMAuthenticationError,
    CGMClient,
    CGMConnectionError,
    CGMError,
    CGMNoConnectionError,
    CGMProviderError,
    CGMSelectionRequiredError,
    ConnectionTestResult,
    GlucoseReading,
    ensure_utc,
)

logger = logging.getLogger(__name__)

LLU_API_ENDPOINTS = {
    "AE": "api-ae.libreview.io",
    "AP": "api-ap.libreview.io",
    "AU": "api-au.libreview.io",
    "CA": "api-ca.libreview.io",
    "CN": "api.libreview.cn",
    "DE": "api-de.libreview.io",
    "EU": "api-eu.libreview.io",
    "EU2": "api-eu2.libreview.io",
    "FR": "api-fr.libreview.io",
    "JP": "api-jp.libreview.io",
    "LA": "api-la.libreview.io",
    "RU": "api-ru.libreview.io",
    "US": "api-us.libreview.io",
}
DEFAULT_LIBRE_REGION = "EU"

LLU_VERSION = "4.16.0"
LLU_PRODUCT = "llu.ios"
USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU OS 17_4.1 like Mac OS X) AppleWebKit/536.26 "
    "(KHTML, like Gecko) Version/17.4.1 Mobile/10A5355d Safari/8536.25"
)

# Les fournisseurs ne chaînent pas les redirections : un seul saut suffit
MAX_REGION_REDIRECTS = 1

LLU_STATUS_BAD_CREDENTIALS = 2

LLU_TIMESTAMP_FORMAT = "%m/%d/%Y %I:%M:%S %p"


class LibreError(CGMError):
    """Erreur LibreLinkUp non classée ailleurs."""


def parse_libre_timestamp(raw: str) -> dt.datetime:
    try:
        return dt.datetime.strptime(raw.strip(), LLU_TIMESTAMP_FORMAT).replace(tzinfo=dt.timezone.utc)
    except (AttributeError, ValueError) as e:
        raise LibreError(f"Invalid LibreLinkUp timestamp: {raw}") from e


def _connection_summary(conn: Dict[str, Any]) -> Dict[str, str]:
    name = f"{conn.get('firstName') or ''} {conn.get('lastName') or ''}".strip()
    return {"id": str(conn.get("patientId")), "name": name}


class LibreLinkUpClient(CGMClient):
    """
    Client LibreLinkUp associé à un compte "suiveur" (email / password).

        cli = LibreLinkUpClient(email, password, region="EU")
        await cli.login()
        readings = await cli.fetch_readings(start, end)
    """

    provider = "librelink"

    def __init__(
        self,
        email: str,
        password: str,
        region: str = DEFAULT_LIBRE_REGION,
        patient_id: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 20.0,
    ):
        super().__init__(transport=transport, timeout=timeout)
        region = (region or DEFAULT_LIBRE_REGION).upper()
        if region not in LLU_API_ENDPOINTS:
            raise ValueError(f"Unknown LibreLinkUp region: {region}")
        self.email = email
        self.password = password
        self.region = region
        self.patient_id = patient_id or None
        self.auth_token: Optional[str] = None
        self.account_id: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f"https://{LLU_API_ENDPOINTS[self.region]}"

    @property
    def is_authenticated(self) -> bool:
        return self.auth_token is not None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json;charset=UTF-8",
            "version": LLU_VERSION,
            "product": LLU_PRODUCT,
        }
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        if self.account_id:
            # account-id = SHA-256 de l'identifiant utilisateur
            headers["account-id"] = hashlib.sha256(self.account_id.encode("utf-8")).hexdigest()
        return headers

    # ----------------------------------------------------------------------
    # HTTP
    # ----------------------------------------------------------------------
    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        try:
            async with self._http() as client:
                resp = await client.request(
                    method, f"{self.base_url}{path}", headers=self._headers(), json=json
                )
        except httpx.HTTPError as e:
            raise CGMConnectionError(f"LibreLinkUp network error: {e}") from e

        text_lower = resp.text.lower()
        if resp.status_code == 429 or "error 1015" in text_lower:
            raise CGMConnectionError("LibreLinkUp rate limited this IP (HTTP 429), retry later")
        if resp.status_code in (401, 403):
            raise CGMAuthenticationError(f"LibreLinkUp refused access (HTTP {resp.status_code})")
        if resp.status_code >= 500:
            raise CGMConnectionError(f"LibreLinkUp API error: {resp.status_code}")
        if resp.status_code != 200:
            raise CGMProviderError(f"LibreLinkUp API error: {resp.status_code} - {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError as e:
            raise CGMProviderError("LibreLinkUp returned a non-JSON response") from e

        status = body.get("status") if isinstance(body, dict) else None
        if status != 0:
            if status == LLU_STATUS_BAD_CREDENTIALS:
                raise CGMAuthenticationError("Invalid LibreLinkUp email or password")
            raise CGMProviderError(f"LibreLinkUp request failed (status={status}): {resp.text[:200]}")
        return body

    # ----------------------------------------------------------------------
    # Login (avec redirection de région bornée)
    # ----------------------------------------------------------------------
    async def login(self) -> None:
        for hop in range(MAX_REGION_REDIRECTS + 1):
            body = await self._request(
                "POST", "/llu/auth/login", json={"email": self.email, "password": self.password}
            )
            data = body.get("data") or {}

            if data.get("redirect") and data.get("region"):
                new_region = str(data["region"]).upper()
                if new_region not in LLU_API_ENDPOINTS:
                    raise CGMProviderError(f"Unknown region redirect: {data['region']}")
                if hop >= MAX_REGION_REDIRECTS:
                    break
                logger.info("[Libre] Redirection de région %s → %s", self.region, new_region)
                self.region = new_region
                continue

            token = (data.get("authTicket") or {}).get("token")
            if not token:
                raise CGMAuthenticationError("No authentication token received from LibreLinkUp")

            self.auth_token = token
            self.account_id = (data.get("user") or {}).get("id")
            logger.info("[Libre] Connecté (région %s)", self.region)
            return

        raise CGMProviderError("Too many LibreLinkUp region redirects")

    # ----------------------------------------------------------------------
    # Patients suivis + graphe
    # ----------------------------------------------------------------------
    async def get_connections(self) -> List[Dict[str, Any]]:
        if not self.auth_token:
            await self.login()
        body = await self._request("GET", "/llu/connections")
        return body.get("data") or []

    async def get_graph(self, patient_id: str) -> Dict[str, Any]:
        if not self.auth_token:
            await self.login()
        body = await self._request("GET", f"/llu/connections/{patient_id}/graph")
        return body.get("data") or {}

    async def resolve_patient_id(self) -> str:
        if self.patient_id:
            return self.patient_id

        connections = await self.get_connections()
        if not connections:
            raise CGMNoConnectionError(
                "No connected patients found. Please add a connection in LibreLinkUp app."
            )
        if len(connections) > 1:
            raise CGMSelectionRequiredError(
                f"Found {len(connections)} connections. Please select a patient.",
                connections=[_connection_summary(c) for c in connections],
            )
        return str(connections[0]["patientId"])

    @staticmethod
    def parse_graph(graph: Dict[str, Any]) -> List[GlucoseReading]:
        out: List[GlucoseReading] = []
        for it in graph.get("graphData") or []:
            try:
                raw_ts = it.get("FactoryTimestamp") or it.get("Timestamp")
                value = it.get("ValueInMgPerDl")
                if not raw_ts or value is None:
                    continue
                out.append(
                    GlucoseReading(
                        timestamp=parse_libre_timestamp(raw_ts),
                        value=float(value),
                        trend=str(it["TrendArrow"]) if it.get("TrendArrow") is not None else None,
                    )
                )
            except (LibreError, TypeError, ValueError) as e:
                # Point individuel ignoré, on log et on continue
                logger.warning("[Libre] Point LibreLinkUp ignoré (%s) : %s", it, e)
                continue

        out.sort(key=lambda r: r.timestamp)
        return out

    async def fetch_readings(self, start: dt.datetime, end: dt.datetime) -> List[GlucoseReading]:
        if not self.auth_token:
            await self.login()
        patient_id = await self.resolve_patient_id()
        readings = self.parse_graph(await self.get_graph(patient_id))

        start, end = ensure_utc(start), ensure_utc(end)
        return [r for r in readings if start <= r.timestamp <= end]

    # ----------------------------------------------------------------------
    # Test des identifiants (aucune écriture)
    # ----------------------------------------------------------------------
    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self.login()
            patient_id = await self.resolve_patient_id()
            graph = await self.get_graph(patient_id)
        except CGMSelectionRequiredError as e:
            return ConnectionTestResult(
                success=False,
                message=str(e),
                connections=e.connections,
                region=self.region,
            )
        except CGMError as e:
            return ConnectionTestResult(success=False, message=str(e))

        count = len(graph.get("graphData") or [])
        return ConnectionTestResult(
            success=True,
            message=f"Connection successful - Found {count} glucose readings",
            readings_count=count,
            region=self.region,
        )


async def check_libre_connection(
    email: str,
    password: str,
    region: str = DEFAULT_LIBRE_REGION,
    patient_id: Optional[str] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConnectionTestResult:
    cli = LibreLinkUpClient(email, password, region, patient_id, transport=transport)
    return await cli.test_connection()
