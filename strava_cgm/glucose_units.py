# strava_cgm/glucose_units.py
# -----------------------------------------------------------------------------
# Conversions d'unités de glycémie. Tout est stocké et calculé en mg/dL ;
# mmol/L n'existe qu'à l'affichage.
#
#   1 mmol/L = 18.0182 mg/dL
# -----------------------------------------------------------------------------
import math

MGDL = "mg/dL"
MMOL = "mmol/L"
GLUCOSE_UNITS = (MGDL, MMOL)

MGDL_PER_MMOL = 18.0182


def round_half_up(value: float, ndigits: int = 0) -> float:
    # round() de Python arrondit au pair (12.5 -> 12) ; on veut 12.5 -> 13
    if not math.isfinite(value):
        return value
    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5) / factor


def normalize_unit(unit: str | None, default: str = MMOL) -> str:
    """Accepte 'mgdl', 'mg/dl', 'mmol', 'MMOL/L'... et renvoie la forme canonique."""
    if not unit:
        return default
    u = unit.strip().lower().replace(" ", "")
    if u in ("mg/dl", "mgdl"):
        return MGDL
    if u in ("mmol/l", "mmol"):
        return MMOL
    raise ValueError(f"Unknown glucose unit: {unit}")


def mgdl_to_mmol(mgdl: float) -> float:
    return round_half_up(mgdl / MGDL_PER_MMOL, 1)


def mmol_to_mgdl(mmol: float) -> int:
    return int(round_half_up(mmol * MGDL_PER_MMOL))


def convert_to_unit(value_mgdl: float, unit: str) -> float:
    if unit == MMOL:
        return mgdl_to_mmol(value_mgdl)
    return value_mgdl


def format_glucose_value(value_mgdl: float, unit: str) -> str:
    if unit == MMOL:
        return f"{mgdl_to_mmol(value_mgdl):.1f}"
    return str(int(round_half_up(value_mgdl)))


def format_glucose(value_mgdl: float, unit: str) -> str:
    return f"{format_glucose_value(value_mgdl, unit)} {unit}"


def target_ranges(unit: str) -> dict:
    if unit == MMOL:
        return {
            "low": mgdl_to_mmol(70),
            "high": mgdl_to_mmol(180),
            "min": 0,
            "max": mgdl_to_mmol(350),
        }
    return {"low": 70, "high": 180, "min": 0, "max": 350}
