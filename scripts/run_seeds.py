"""Crée les tables manquantes puis charge les données de référence.

Usage::

    python -m scripts.run_seeds
"""
import logging
import os
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))
from app.db.base import Base  # noqa: E402 - charge tous les modèles
from app.db.initial_data import get_or_create_admin, seed_achievements, seed_rewards  # noqa: E402
from app.db.session import SessionLocal, sync_engine  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main() -> None:
    Base.metadata.create_all(bind=sync_engine)
    db = SessionLocal()
    try:
        seed_achievements(db)
        seed_rewards(db)
        admin_email = os.getenv("SEED_ADMIN_EMAIL")
        admin_password = os.getenv("SEED_ADMIN_PASSWORD")
        if admin_email and admin_password:
            get_or_create_admin(db, admin_email, admin_password)
        else:
            logger.info("SEED_ADMIN_EMAIL/SEED_ADMIN_PASSWORD absents : pas de compte administrateur.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
