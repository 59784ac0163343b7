from __future__ import annotations

import logging

from sqlalchemy import select

from .core import hash_password
from ..config import Settings
from ..database import db_session
from ..models import User

logger = logging.getLogger("tokengate.seed")

_DEFAULT_PASSWORD = "changeme"


def seed_admin(settings: Settings) -> None:
    """
    Create a default admin account on first startup if no users exist.

    Credentials come from TOKENGATE_ADMIN_EMAIL / TOKENGATE_ADMIN_PASSWORD /
    TOKENGATE_ADMIN_NAME. The default password is refused outside the
    development environment.
    """
    with db_session() as session:
        existing = session.execute(select(User).limit(1)).scalar_one_or_none()
        if existing:
            return  # Users already seeded, leave them alone

        if settings.admin_password == _DEFAULT_PASSWORD:
            if settings.environment != "development":
                logger.error(
                    "Refusing to seed the default admin password in the %s environment. "
                    "Set TOKENGATE_ADMIN_PASSWORD.",
                    settings.environment,
                )
                return
            logger.warning(
                "Seeding admin with the DEFAULT password. "
                "Set TOKENGATE_ADMIN_PASSWORD before deploying to production."
            )

        admin = User(
            email=settings.admin_email.strip().lower(),
            name=settings.admin_name,
            password_hash=hash_password(settings.admin_password),
            is_active=True,
        )
        session.add(admin)
        logger.info("Default admin created: %s", admin.email)
