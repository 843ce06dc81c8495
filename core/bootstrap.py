"""
Idempotent start-up initialisation.

A default staff account is materialised from DEFAULT_ADMIN_EMAIL and
DEFAULT_ADMIN_PASSWORD when both are configured and no user with that
e-mail exists yet.
"""
import logging
from typing import Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction

logger = logging.getLogger(__name__)


def ensure_default_admin(email: Optional[str] = None, password: Optional[str] = None):
    """
    Create the default admin account if it does not exist.

    Returns:
        Tuple of (user or None, created flag)
    """
    email = email if email is not None else settings.DEFAULT_ADMIN_EMAIL
    password = password if password is not None else settings.DEFAULT_ADMIN_PASSWORD
    if not email or not password:
        logger.debug("Default admin not configured, skipping bootstrap")
        return None, False

    User = get_user_model()
    with transaction.atomic():
        existing = User.objects.filter(email__iexact=email).first()
        if existing is not None:
            logger.info(f"Admin user {email} already exists")
            return existing, False

        user = User.objects.create_superuser(
            username=email.split('@')[0],
            email=email,
            password=password,
        )
    logger.info(f"Created default admin user {email}")
    return user, True


def bootstrap_admin_after_migrate(sender, **kwargs):
    ensure_default_admin()
