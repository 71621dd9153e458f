# strava_cgm/settings.py
# -----------------------------------------------------------------------------
# Configuration centralisée de l’application via Pydantic.
# Chargement automatique depuis `.env`.
#
# 🔹 STRAVA : OAuth, webhook (verify token + signature)
# 🔹 DATABASE : Connexion SQLAlchemy
# 🔹 SÉCURITÉ : Clé de chiffrement des identifiants CGM (Fernet)
# 🔹 FILE DE JOBS : tentatives, délai de retry, timeout, rétention
# 🔹 AUTRES : URL publique, écoute du serveur, timeouts HTTP, niveau de logs
# -----------------------------------------------------------------------------
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    # === STRAVA ===
    STRAVA_CLIENT_ID: str = Field(...)
    STRAVA_CLIENT_SECRET: str = Field(...)
    STRAVA_REDIRECT_URI: str = Field(default="http://localhost:8000/auth/strava/callback")
    STRAVA_VERIFY_TOKEN: str = Field(default="")

    # Sans en-tête `strava-signature`, la requête est rejetée (401) sauf si
    # ce flag est explicitement activé (dev local uniquement).
    STRAVA_ALLOW_UNSIGNED: bool = Field(default=False)

    # === DATABASE ===
    DATABASE_URL: str = Field(default="sqlite:///./strava_cgm.db")

    # === SÉCURITÉ ===
    # Clé Fernet (urlsafe base64, 32 octets) pour les identifiants CGM
    APP_ENCRYPTION_KEY: str = Field(default="")

    # === FILE DE JOBS ===
    JOB_MAX_ATTEMPTS: int = Field(default=3)
    JOB_RETRY_DELAY_SECONDS: float = Field(default=10.0)
    JOB_TIMEOUT_SECONDS: float = Field(default=120.0)
    JOB_COMPLETED_TTL_SECONDS: float = Field(default=60.0)
    JOB_FAILED_TTL_SECONDS: float = Field(default=3600.0)

    # === AUTRES ===
    APP_BASE_URL: str = Field(default="http://localhost:8000")
    HOST: str = Field(default="127.0.0.1")
    PORT: int = Field(default=8000)
    HTTP_TIMEOUT_SECONDS: float = Field(default=20.0)
    LOG_LEVEL: str = Field(default="INFO")

    # Lecture automatique du fichier .env
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
