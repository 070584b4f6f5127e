"""Seed the first supervisor account if not present."""
import logging

from itrack.api.deps import get_password_hash
from itrack.config import Settings
from itrack.models.user import User, UserRole

logger = logging.getLogger(__name__)

SUPERVISOR_FIRST_NAME = "iTrack"
SUPERVISOR_LAST_NAME = "Supervisor"


async def seed_supervisor(settings: Settings) -> None:
    if not settings.seed_supervisor_password:
        logger.info("SEED_SUPERVISOR_PASSWORD not set; skipping supervisor seed")
        return
    email = settings.seed_supervisor_email.lower()
    existing = await User.find_one(User.email == email)
    if existing:
        return
    await User(
        email=email,
        hashed_password=get_password_hash(settings.seed_supervisor_password),
        role=UserRole.SUPERVISOR,
        first_name=SUPERVISOR_FIRST_NAME,
        last_name=SUPERVISOR_LAST_NAME,
        accepted_terms=True,
    ).insert()
    logger.info(f"Seeded supervisor {email}")
