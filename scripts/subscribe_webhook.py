# scripts/subscribe_webhook.py
# Crée l'abonnement webhook Strava en dehors de l'API (premier déploiement).
# CALLBACK_URL par défaut : {APP_BASE_URL}/webhooks/strava
import asyncio
import os
import sys
sys.path.append(os.path.abspath("."))

from strava_cgm.settings import settings
from strava_cgm.strava_client import StravaClientError, create_subscription, list_subscriptions


async def main() -> int:
    callback_url = os.getenv("CALLBACK_URL") or f"{settings.APP_BASE_URL.rstrip('/')}/webhooks/strava"
    if not settings.STRAVA_VERIFY_TOKEN:
        print("Missing env. Need STRAVA_VERIFY_TOKEN")
        return 2

    try:
        existing = await list_subscriptions()
        if existing:
            print("Subscription already exists:", existing[0])
            return 0

        subscription = await create_subscription(callback_url, settings.STRAVA_VERIFY_TOKEN)
    except StravaClientError as e:
        print("Subscription failed:", e)
        return 1

    print("Subscription created:", subscription)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
