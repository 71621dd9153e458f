# strava_cgm/cgm_common.py
# -----------------------------------------------------------------------------
# Contrat commun aux clients CGM (LibreLinkUp, Dexcom Share) :
#
# 🔹 GlucoseReading : une lecture normalisée (datetime UTC aware, mg/dL).
# 🔹 Hiérarchie d'erreurs typées. L'attribut `retryable` est lu par la file
#    de jobs : inutile de réessayer avec un mot de passe faux.
# 🔹 CGMClient : interface login / fetch_readings / test_connection.
# 🔹 ConnectionTestResult : résultat structuré d'un test d'identifiants.
# -----------------------------------------------------------------------------
import abc
import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx


def ensure_utc(d: dt.datetime) -> dt.datetime:
    # naïf => on suppose de l'UTC
    if d.tzinfo is None:
        return d.replace(tzinfo=dt.timezone.utc)
    return d.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class GlucoseReading:
    timestamp: dt.datetime
    value: float
    trend: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlucoseReading":
        ts = dt.datetime.fromisoformat(str(data["timestamp"]).replace("Z", "+00:00"))
        return cls(timestamp=ensure_utc(ts), value=float(data["value"]), trend=data.get("trend"))


# ----------------------------------------------------------------------
# Erreurs
# ----------------------------------------------------------------------
class CGMError(RuntimeError):
    """Erreur générique d'un fournisseur CGM."""

    retryable = True


class CGMAuthenticationError(CGMError):
    """Identifiants refusés par le fournisseur."""

    retryable = False


class CGMConnectionError(CGMError):
    """Réseau, timeout, HTTP 5xx / 429 : transitoire."""


class CGMProviderError(CGMError):
    """Erreur logique renvoyée dans une réponse HTTP 200 (status != 0, payload inattendu)."""


class CGMNoConnectionError(CGMError):
    """Aucun patient suivi sur le compte LibreLinkUp."""

    retryable = False


class CGMSelectionRequiredError(CGMError):
    """Plusieurs patients suivis et aucun choisi : l'appelant doit trancher."""

    retryable = False

    def __init__(self, message: str, connections: List[Dict[str, str]]):
        super().__init__(message)
        self.connections = connections


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    readings_count: Optional[int] = None
    connections: Optional[List[Dict[str, str]]] = None
    region: Optional[str] = None


class CGMClient(abc.ABC):
    """
    Interface commune. Une instance porte les identifiants d'un utilisateur ;
    `transport` permet d'injecter un transport httpx (tests, proxy).
    """

    provider: str = ""

    def __init__(
        self,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 20.0,
    ):
        self.transport = transport
        self.timeout = timeout

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    @abc.abstractmethod
    async def login(self) -> None:
        ...

    @abc.abstractmethod
    async def fetch_readings(self, start: dt.datetime, end: dt.datetime) -> List[GlucoseReading]:
        ...

    @abc.abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        ...
