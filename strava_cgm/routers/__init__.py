# strava_cgm/routers/__init__.py
"""
Routers FastAPI de l'application :
- webhooks        : handshake + réception des événements Strava
- auth_strava     : connexion OAuth Strava
- cgm_credentials : test / enregistrement des identifiants LibreLinkUp et Dexcom
- users           : statut, réglages, déconnexion CGM
- activities      : données du rapport CGM détaillé
- subscriptions   : abonnement webhook Strava
"""

from . import activities
from . import auth_strava
from . import cgm_credentials
from . import subscriptions
from . import users
from . import webhooks
