# strava_cgm/logic.py
# -----------------------------------------------------------------------------
# Ce module gère la logique de calcul sur les données CGM, transmises par
# l'orchestrateur (`enrichment.py`) ou par l'API de détail d'activité.
#
# Il ne récupère aucune donnée directement : il reçoit des lectures déjà
# normalisées (mg/dL, datetime UTC) puis :
#
# 🔹 Filtre les lectures dans la fenêtre temporelle d’une activité.
# 🔹 Calcule les statistiques glycémiques (moyenne, min, max, écart-type,
#    temps sous / dans / au-dessus de la cible, coefficient de variation).
# 🔹 Génère une barre visuelle (🟥🟩🟨) et le résumé compact pour Strava.
# 🔹 Insère ce résumé en tête de la description Strava existante, sans
#    empiler les anciens résumés automatiques.
# -----------------------------------------------------------------------------
import datetime as dt
import logging
import math
import re
from dataclasses import dataclass, asdict
from typing import Iterable, Optional, Sequence

from strava_cgm.cgm_common import GlucoseReading, ensure_utc
from strava_cgm.glucose_units import MMOL, format_glucose, round_half_up

logger = logging.getLogger(__name__)

TARGET_MIN = 70
TARGET_MAX = 180

# Marge autour de l'activité pour capter le contexte avant / après
ACTIVITY_WINDOW_MARGIN = dt.timedelta(minutes=15)

BAR_BLOCKS = 10


@dataclass(frozen=True)
class Thresholds:
    low: float = TARGET_MIN
    high: float = TARGET_MAX

    def __post_init__(self):
        if self.low >= self.high:
            raise ValueError(f"low threshold ({self.low}) must be below high threshold ({self.high})")


DEFAULT_THRESHOLDS = Thresholds()


@dataclass(frozen=True)
class GlucoseStats:
    count: int
    average: float
    min: float
    max: float
    std_dev: float
    time_in_range: int
    time_below_range: int
    time_above_range: int
    coefficient_of_variation: float

    def as_dict(self) -> dict:
        return asdict(self)


#----------------------------------------------------------------------------
# Calcul des stats glycémiques
#----------------------------------------------------------------------------
def compute_stats(
    readings: Sequence[GlucoseReading],
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> Optional[GlucoseStats]:
    """
    Statistiques descriptives sur un ensemble de lectures (mg/dL).

    - None si aucune lecture.
    - Écart-type de population (division par N).
    - CV = écart-type / moyenne * 100 ; NaN si la moyenne vaut 0.
    - Chaque pourcentage est arrondi indépendamment : la somme peut
      valoir 99 ou 101.
    """
    if not readings:
        return None

    values = [float(r.value) for r in readings]
    n = len(values)

    avg = sum(values) / n
    variance = sum((v - avg) ** 2 for v in values) / n
    std_dev = math.sqrt(variance)
    cv = (std_dev / avg) * 100 if avg != 0 else math.nan

    nb_below = sum(1 for v in values if v < thresholds.low)
    nb_above = sum(1 for v in values if v > thresholds.high)
    nb_in_range = n - nb_below - nb_above

    return GlucoseStats(
        count=n,
        average=round_half_up(avg),
        min=min(values),
        max=max(values),
        std_dev=round_half_up(std_dev, 1),
        time_in_range=int(round_half_up(nb_in_range / n * 100)),
        time_below_range=int(round_half_up(nb_below / n * 100)),
        time_above_range=int(round_half_up(nb_above / n * 100)),
        coefficient_of_variation=round_half_up(cv, 1),
    )


#------------------------------------------------------------------------------
# Sélectionne les lectures dans une fenêtre temporelle
#------------------------------------------------------------------------------
def filter_readings_by_window(
    readings: Iterable[GlucoseReading],
    start: dt.datetime,
    end: dt.datetime,
) -> list[GlucoseReading]:
    lo, hi = ensure_utc(start), ensure_utc(end)
    return [r for r in readings if lo <= r.timestamp <= hi]


def sort_readings(readings: Iterable[GlucoseReading]) -> list[GlucoseReading]:
    return sorted(readings, key=lambda r: r.timestamp)


def activity_window(
    start_date: dt.datetime,
    elapsed_seconds: int,
    margin: dt.timedelta = ACTIVITY_WINDOW_MARGIN,
) -> tuple[dt.datetime, dt.datetime, dt.datetime, dt.datetime]:
    """Retourne (start, end, start étendu, end étendu), tout en UTC aware."""
    start = ensure_utc(start_date)
    end = start + dt.timedelta(seconds=int(elapsed_seconds or 0))
    return start, end, start - margin, end + margin


def build_range_bar(pct_below: float, pct_in_range: float, pct_above: float) -> str:
    blocks_below = max(0, int(round_half_up(pct_below / 100 * BAR_BLOCKS)))
    blocks_above = max(0, int(round_half_up(pct_above / 100 * BAR_BLOCKS)))
    blocks_in_range = max(0, BAR_BLOCKS - blocks_below - blocks_above)
    bar = "🟥" * blocks_below + "🟩" * blocks_in_range + "🟨" * blocks_above
    return bar[:BAR_BLOCKS]


#---------------------------------------------------------------------------
# Résumé compact pour la description Strava
#---------------------------------------------------------------------------
SUMMARY_RANGE_LINE = re.compile(r"^🎯 \d+% in Range  [🟥🟩🟨]{1,10}\s*$")
SUMMARY_AVG_LINE = re.compile(r"^🩸 Avg : .+ - Min : .+ - Max : .+$")
SUMMARY_LINK_LINE = re.compile(r"^📈 Detailed CGM report: \S+\s*$")


def format_glucose_summary(
    stats: GlucoseStats,
    unit: str = MMOL,
    activity_id: Optional[int] = None,
    base_url: Optional[str] = None,
) -> str:
    bar = build_range_bar(stats.time_below_range, stats.time_in_range, stats.time_above_range)
    lines = [
        f"🎯 {stats.time_in_range}% in Range  {bar}",
        (
            f"🩸 Avg : {format_glucose(stats.average, unit)}"
            f" - Min : {format_glucose(stats.min, unit)}"
            f" - Max : {format_glucose(stats.max, unit)}"
        ),
    ]
    if activity_id and base_url:
        lines.append(f"📈 Detailed CGM report: {base_url.rstrip('/')}/activity/{activity_id}")
    return "\n".join(lines)


def _strip_previous_summary(lines: list[str]) -> list[str]:
    # Un bloc n'est retiré que s'il a exactement la forme générée :
    # ligne 🎯 + ligne 🩸, puis éventuellement le lien 📈.
    if len(lines) < 2:
        return lines
    if not (SUMMARY_RANGE_LINE.match(lines[0]) and SUMMARY_AVG_LINE.match(lines[1])):
        return lines
    rest = lines[2:]
    if rest and SUMMARY_LINK_LINE.match(rest[0]):
        rest = rest[1:]
    while rest and not rest[0].strip():
        rest = rest[1:]
    return rest


def prepend_summary(existing: Optional[str], summary: str) -> str:
    """
    Résumé CGM en tête, puis le texte saisi par l'athlète.
    Un ancien résumé automatique en tête de description est remplacé ;
    tout autre texte (même commençant par 🎯) est conservé.
    """
    lines = (existing or "").strip().splitlines()
    while True:
        stripped = _strip_previous_summary(lines)
        if stripped is lines:
            break
        lines = stripped
    base = "\n".join(lines).strip()

    if base:
        return f"{summary}\n\n{base}"
    return summary
