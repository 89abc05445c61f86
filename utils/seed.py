import logging

from models import db
from models.user import Role
from utils.roles import UserRole

logger = logging.getLogger(__name__)


def seed_roles() -> list:
    """Insert any missing role rows; returns the names that were created."""
    existing = {name for (name,) in db.session.query(Role.name).all()}
    created = [r.value for r in UserRole if r.value not in existing]
    db.session.add_all(Role(name=name) for name in created)
    db.session.commit()
    if created:
        logger.info("seeded roles: %s", ", ".join(created))
    return created
