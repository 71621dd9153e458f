# strava_cgm/encryption.py
# -----------------------------------------------------------------------------
# Chiffrement des identifiants CGM stockés en base (Fernet, AES-128-CBC + HMAC).
# La clé vient de `APP_ENCRYPTION_KEY` ; elle n'a pas de valeur par défaut.
# -----------------------------------------------------------------------------
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from strava_cgm.settings import settings


class EncryptionError(RuntimeError):
    """Clé absente ou invalide : erreur de configuration, pas de retry."""

    retryable = False


def _cipher(key: Optional[str] = None) -> Fernet:
    key = key or settings.APP_ENCRYPTION_KEY
    if not key:
        raise EncryptionError("APP_ENCRYPTION_KEY is required to store CGM credentials")
    try:
        return Fernet(key.encode("utf-8"))
    except (ValueError, TypeError) as e:
        raise EncryptionError(f"APP_ENCRYPTION_KEY is not a valid Fernet key: {e}") from e


def encrypt(plaintext: str, key: Optional[str] = None) -> str:
    return _cipher(key).encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt(ciphertext: str, key: Optional[str] = None) -> str:
    try:
        return _cipher(key).decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise EncryptionError("Unable to decrypt stored credentials (wrong key?)") from e


def generate_key() -> str:
    return Fernet.generate_key().decode("utf-8")
