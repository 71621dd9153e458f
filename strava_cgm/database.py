# strava_cgm/database.py
# -----------------------------------------------------------------------------
# Connexion SQLAlchemy : engine, fabrique de sessions, Base déclarative.
#
# - `SessionLocal()` : une session par job / par requête.
# - `get_db()` : dépendance FastAPI (ouvre puis ferme la session).
# - `init_db()` : crée les tables manquantes au démarrage.
# -----------------------------------------------------------------------------
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from strava_cgm.settings import settings

DATABASE_URL = settings.DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs = {"connect_args": {"check_same_thread": False}}
    # Base en mémoire : une seule connexion partagée, sinon chaque session
    # verrait une base vide.
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def init_db() -> None:
    # import local : enregistre les modèles sur Base.metadata
    from strava_cgm import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
