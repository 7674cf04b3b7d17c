"""Admin panel authentication (sqladmin).

The panel is read-mostly operator tooling: a single username/password pair
from settings, with the session signed by ADMIN_SECRET_KEY. Without
ADMIN_PASSWORD nobody can log in.
"""

import hmac
import logging

from sqladmin.authentication import AuthenticationBackend
from starlette.requests import Request

from .deps import get_settings

logger = logging.getLogger(__name__)


class SimpleAuth(AuthenticationBackend):
    async def login(self, request: Request) -> bool:
        form = await request.form()
        username = str(form.get("username") or "")
        password = str(form.get("password") or "")

        settings = get_settings()
        if not settings.ADMIN_PASSWORD:
            logger.warning("[ADMIN] Login attempted but ADMIN_PASSWORD is not set")
            return False

        valid = hmac.compare_digest(username, settings.ADMIN_USERNAME) and hmac.compare_digest(
            password, settings.ADMIN_PASSWORD
        )
        if valid:
            request.session.update({"admin_user": username})
            logger.info("[ADMIN] %s logged in", username)
        return valid

    async def logout(self, request: Request) -> bool:
        request.session.clear()
        return True

    async def authenticate(self, request: Request) -> bool:
        return bool(request.session.get("admin_user"))
