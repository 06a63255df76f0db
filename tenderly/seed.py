# tenderly/seed.py
import logging

from .database import SessionLocal
from .dependencies import get_shift_resolver

logger = logging.getLogger(__name__)


def create_initial_data():
    """Boot-time seeding. Idempotent."""
    db = SessionLocal()
    try:
        created = get_shift_resolver().initialize_default_shifts(db)
        if created:
            logger.info(f"Seeded {len(created)} default doctor shifts")
    finally:
        db.close()
