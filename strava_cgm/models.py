# strava_cgm/models.py
# -----------------------------------------------------------------------------
# Modèles SQLAlchemy : schéma DB + relations
#
# - User : athlète Strava + fournisseur CGM actif (`librelink` / `dexcom`)
# - StravaToken : tokens OAuth Strava (1-1)
# - LibreLinkUpCredentials / DexcomCredentials : identifiants chiffrés,
#   un seul des deux à la fois par utilisateur (voir credentials.py)
# - UserSettings : seuils glycémie + unité d'affichage
# - ActivityCgmData : snapshot des lectures CGM d'une activité (upsert)
# - ActivityUpdateLog : journal d'audit des traitements
# -----------------------------------------------------------------------------
from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    BigInteger,
    ForeignKey,
    Text,
    DateTime,
    Float,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.orm import relationship

from strava_cgm.database import Base

CGM_PROVIDERS = ("librelink", "dexcom")


# --- User ---------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    athlete_id = Column(BigInteger, unique=True, index=True, nullable=False)

    # Profil Strava
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    profile_picture = Column(String, nullable=True)

    # Source CGM active : None / "librelink" / "dexcom"
    cgm_provider = Column(String(20), nullable=True, default=None)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relations
    strava_token = relationship(
        "StravaToken", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    librelink_credentials = relationship(
        "LibreLinkUpCredentials", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    dexcom_credentials = relationship(
        "DexcomCredentials", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    settings = relationship(
        "UserSettings", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    activity_cgm_data = relationship(
        "ActivityCgmData", back_populates="user", cascade="all, delete-orphan"
    )
    update_logs = relationship(
        "ActivityUpdateLog", back_populates="user", cascade="all, delete-orphan"
    )


class StravaToken(Base):
    __tablename__ = "strava_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(BigInteger, nullable=False)  # timestamp Unix
    scope = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="strava_token")


class LibreLinkUpCredentials(Base):
    __tablename__ = "librelink_credentials"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    encrypted_email = Column(Text, nullable=False)
    encrypted_password = Column(Text, nullable=False)

    region = Column(String(8), default="EU", nullable=False)
    patient_id = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="librelink_credentials")


class DexcomCredentials(Base):
    __tablename__ = "dexcom_credentials"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    encrypted_username = Column(Text, nullable=False)
    encrypted_password = Column(Text, nullable=False)

    server = Column(String, default="shareous1.dexcom.com", nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="dexcom_credentials")


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    low_threshold = Column(Float, nullable=False, default=70.0)    # mg/dL
    high_threshold = Column(Float, nullable=False, default=180.0)  # mg/dL
    unit = Column(String(10), nullable=False, default="mmol/L")    # affichage
    enable_auto_update = Column(Boolean, nullable=False, default=True)

    user = relationship("User", back_populates="settings")


class ActivityCgmData(Base):
    __tablename__ = "activity_cgm_data"
    __table_args__ = (
        UniqueConstraint("user_id", "activity_id", name="uq_user_activity_cgm"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activity_id = Column(BigInteger, index=True, nullable=False)

    # [{"timestamp": iso8601, "value": mg/dL}, ...]
    data_points = Column(JSON, nullable=False)
    start_time = Column(DateTime, nullable=False)  # UTC naïf
    end_time = Column(DateTime, nullable=False)    # UTC naïf

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="activity_cgm_data")


class ActivityUpdateLog(Base):
    __tablename__ = "activity_update_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activity_id = Column(BigInteger, index=True, nullable=False)

    status = Column(String(16), nullable=False)  # success / skipped / error
    message = Column(Text, nullable=True)
    cgm_points = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="update_logs")
