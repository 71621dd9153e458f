"""Strava x CGM : résumé glycémie ajouté automatiquement aux activités Strava."""

__version__ = "0.1.0"
