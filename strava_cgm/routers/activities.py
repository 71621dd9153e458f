# strava_cgm/routers/activities.py
# -----------------------------------------------------------------------------
# Données de la page "rapport CGM détaillé" (lien ajouté dans la description
# Strava) : lectures converties dans l'unité de l'utilisateur + stats.
# Les stats sont recalculées à partir du snapshot stocké, avec les seuils
# actuels de l'utilisateur.
# -----------------------------------------------------------------------------
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from strava_cgm.cgm_common import GlucoseReading
from strava_cgm.database import get_db
from strava_cgm.glucose_units import convert_to_unit, normalize_unit, target_ranges
from strava_cgm.logic import DEFAULT_THRESHOLDS, Thresholds, compute_stats, sort_readings
from strava_cgm.models import ActivityCgmData

router = APIRouter(prefix="/api/activities", tags=["activities"])


def _finite_or_none(v: float) -> Optional[float]:
    return v if math.isfinite(v) else None


@router.get("/{activity_id}")
def activity_detail(
    activity_id: int,
    user_id: Optional[int] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    q = db.query(ActivityCgmData).filter(ActivityCgmData.activity_id == activity_id)
    if user_id is not None:
        q = q.filter(ActivityCgmData.user_id == user_id)
    row = q.first()
    if row is None:
        raise HTTPException(status_code=404, detail="Activity not found")

    user_settings = row.user.settings
    thresholds = (
        Thresholds(low=user_settings.low_threshold, high=user_settings.high_threshold)
        if user_settings
        else DEFAULT_THRESHOLDS
    )
    unit = normalize_unit(user_settings.unit if user_settings else None)

    readings = sort_readings(GlucoseReading.from_dict(p) for p in row.data_points or [])
    stats = compute_stats(readings, thresholds)

    stats_out = None
    if stats is not None:
        stats_out = {
            "count": stats.count,
            "average": convert_to_unit(stats.average, unit),
            "min": convert_to_unit(stats.min, unit),
            "max": convert_to_unit(stats.max, unit),
            "stdDev": convert_to_unit(stats.std_dev, unit),
            "timeInRange": stats.time_in_range,
            "timeBelowRange": stats.time_below_range,
            "timeAboveRange": stats.time_above_range,
            "coefficientOfVariation": _finite_or_none(stats.coefficient_of_variation),
        }

    return {
        "activityId": str(row.activity_id),
        "startTime": row.start_time.isoformat() + "Z",
        "endTime": row.end_time.isoformat() + "Z",
        "unit": unit,
        "targetRange": target_ranges(unit),
        "readings": [
            {"timestamp": r.timestamp.isoformat(), "value": convert_to_unit(r.value, unit)}
            for r in readings
        ],
        "stats": stats_out,
    }
