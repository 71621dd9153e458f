# scripts/init_db.py
# Crée les tables (users, tokens Strava, identifiants CGM, réglages, snapshots,
# journal d'audit) puis vérifie la clé de chiffrement des identifiants CGM.
import os
import sys
sys.path.append(os.path.abspath("."))

from strava_cgm.database import Base, DATABASE_URL, init_db
from strava_cgm.encryption import EncryptionError, decrypt, encrypt, generate_key
from strava_cgm.settings import settings


def check_encryption_key() -> bool:
    if not settings.APP_ENCRYPTION_KEY:
        print("⚠️ APP_ENCRYPTION_KEY absente : les identifiants CGM ne pourront pas être enregistrés.")
        print("   Exemple de clé à mettre dans .env :")
        print(f"   APP_ENCRYPTION_KEY={generate_key()}")
        return False
    try:
        decrypt(encrypt("ping"))
    except EncryptionError as e:
        print(f"❌ APP_ENCRYPTION_KEY invalide : {e}")
        return False
    print("✅ Clé de chiffrement OK")
    return True


if __name__ == "__main__":
    print(f"🔧 Initialisation de la base : {DATABASE_URL}")
    init_db()
    print(f"✅ Tables : {', '.join(sorted(Base.metadata.tables))}")

    sys.exit(0 if check_encryption_key() else 1)
