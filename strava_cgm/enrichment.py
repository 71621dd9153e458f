# strava_cgm/enrichment.py
# -----------------------------------------------------------------------------
# Orchestrateur : une activité Strava → résumé glycémie dans sa description.
#
# Appelé par la file de jobs avec un ActivityJob (activity_id, athlete_id).
#
# 🔹 Étapes :
#     1. Retrouve l'utilisateur via athlete_id.
#     2. Vérifie token Strava / fournisseur CGM / auto-update ; sinon on
#        journalise un `skipped` et on s'arrête (pas d'exception).
#     3. Rafraîchit le token Strava si besoin (commit avant usage).
#     4. Lit l'activité, calcule la fenêtre [start, end] ± 15 min.
#     5. Lit les glycémies chez le fournisseur CGM de l'utilisateur.
#     6. Stats avec les seuils de l'utilisateur, résumé dans son unité.
#     7. Résumé en tête de description, réécriture sur Strava.
#     8. Snapshot des lectures (ActivityCgmData, upsert) + audit `success`.
#
# 🔹 Toute autre erreur est journalisée, auditée (`error`) puis relancée :
#    c'est la file qui décide de réessayer.
# -----------------------------------------------------------------------------
import logging
import time
from typing import Callable, List, Optional

from strava_cgm.cgm_common import GlucoseReading, ensure_utc
from strava_cgm.cgm_service import build_cgm_client
from strava_cgm.database import SessionLocal
from strava_cgm.glucose_units import normalize_unit
from strava_cgm.logic import (
    DEFAULT_THRESHOLDS,
    Thresholds,
    activity_window,
    compute_stats,
    format_glucose_summary,
    prepend_summary,
    sort_readings,
)
from strava_cgm.models import ActivityCgmData, ActivityUpdateLog, User
from strava_cgm.settings import settings
from strava_cgm.strava_client import StravaClient, ensure_access_token, parse_strava_datetime
from strava_cgm.webhook import ActivityJob

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"


def _audit(db, user_id: int, activity_id: int, status: str, message: str, cgm_points: Optional[int] = None):
    db.add(
        ActivityUpdateLog(
            user_id=user_id,
            activity_id=activity_id,
            status=status,
            message=message,
            cgm_points=cgm_points,
        )
    )
    db.commit()


def _skip(db, user: User, activity_id: int, message: str) -> str:
    logger.info("[Enrich] Activité %s ignorée pour user=%s : %s", activity_id, user.id, message)
    _audit(db, user.id, activity_id, STATUS_SKIPPED, message)
    return STATUS_SKIPPED


def _user_thresholds(user: User) -> Thresholds:
    s = user.settings
    if s is None:
        return DEFAULT_THRESHOLDS
    return Thresholds(low=s.low_threshold, high=s.high_threshold)


def _store_cgm_data(db, user_id: int, activity_id: int, readings: List[GlucoseReading], start, end) -> None:
    points = [r.to_dict() for r in readings]
    start_naive = ensure_utc(start).replace(tzinfo=None)
    end_naive = ensure_utc(end).replace(tzinfo=None)

    row = (
        db.query(ActivityCgmData)
        .filter(ActivityCgmData.user_id == user_id, ActivityCgmData.activity_id == activity_id)
        .first()
    )
    if row is None:
        row = ActivityCgmData(user_id=user_id, activity_id=activity_id)
        db.add(row)
    row.data_points = points
    row.start_time = start_naive
    row.end_time = end_naive


async def enrich_activity(
    job: ActivityJob,
    *,
    session_factory=SessionLocal,
    strava_factory: Optional[Callable[[str], StravaClient]] = None,
    cgm_factory=build_cgm_client,
    strava_transport=None,
    now: Callable[[], float] = time.time,
) -> str:
    activity_id, athlete_id = job.activity_id, job.athlete_id
    strava_factory = strava_factory or (lambda token: StravaClient(token, transport=strava_transport))

    logger.info("[Enrich] Traitement activité %s (athlete %s)", activity_id, athlete_id)

    db = session_factory()
    try:
        user = db.query(User).filter(User.athlete_id == athlete_id).first()
        if not user:
            # pas d'utilisateur => rien à auditer (la FK exige un user)
            logger.info("[Enrich] Aucun utilisateur pour athlete %s", athlete_id)
            return STATUS_SKIPPED

        if not user.strava_token:
            return _skip(db, user, activity_id, "No Strava token")
        if not user.cgm_provider:
            return _skip(db, user, activity_id, "No CGM configured")
        if user.settings is not None and not user.settings.enable_auto_update:
            return _skip(db, user, activity_id, "Auto-update disabled")

        user_id = user.id
        try:
            access_token = await ensure_access_token(
                db, user.strava_token, transport=strava_transport, now=now()
            )
            strava = strava_factory(access_token)
            activity = await strava.get_activity(activity_id)

            start, end, ext_start, ext_end = activity_window(
                parse_strava_datetime(activity["start_date"]),
                activity.get("elapsed_time") or 0,
            )

            cgm = cgm_factory(user)
            readings = sort_readings(await cgm.fetch_readings(ext_start, ext_end))
            if not readings:
                return _skip(db, user, activity_id, "No glucose data available")

            stats = compute_stats(readings, _user_thresholds(user))
            unit = normalize_unit(user.settings.unit if user.settings else None)
            summary = format_glucose_summary(stats, unit, activity_id, settings.APP_BASE_URL)

            description = prepend_summary(activity.get("description"), summary)
            await strava.update_activity_description(activity_id, description)

            _store_cgm_data(db, user_id, activity_id, readings, start, end)
            _audit(
                db,
                user_id,
                activity_id,
                STATUS_SUCCESS,
                f"Added {len(readings)} glucose points",
                cgm_points=len(readings),
            )
        except Exception as e:
            db.rollback()
            logger.exception("[Enrich] Erreur traitement activité %s (user=%s)", activity_id, user_id)
            try:
                _audit(db, user_id, activity_id, STATUS_ERROR, str(e) or e.__class__.__name__)
            except Exception:
                db.rollback()
                logger.exception("[Enrich] Impossible d'écrire l'audit pour l'activité %s", activity_id)
            raise

        logger.info(
            "[Enrich] Activité %s enrichie avec %s lectures glycémie", activity_id, len(readings)
        )
        return STATUS_SUCCESS
    finally:
        db.close()
