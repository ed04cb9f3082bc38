"""
Organization membership checks.

Identity is established upstream; this service only answers whether a user
belongs to an organization. The in-memory implementation is the default
collaborator and can be replaced by anything exposing ``is_member``.
"""

import logging
import threading
from typing import Optional

from geotile.config import settings
from geotile.services.errors import AuthorizationError

logger = logging.getLogger(__name__)


class AccessService:
    """In-memory membership registry."""

    def __init__(self, memberships: Optional[dict[str, set[str]]] = None):
        self._memberships: dict[str, set[str]] = {
            user: set(orgs) for user, orgs in (memberships or {}).items()
        }
        self._lock = threading.Lock()

    def grant(self, user_id: str, organization_id: str) -> None:
        with self._lock:
            self._memberships.setdefault(user_id, set()).add(organization_id)
        logger.info(f"Granted {user_id} membership of {organization_id}")

    def revoke(self, user_id: str, organization_id: str) -> None:
        with self._lock:
            self._memberships.get(user_id, set()).discard(organization_id)
        logger.info(f"Revoked {user_id} membership of {organization_id}")

    def is_member(self, user_id: str, organization_id: str) -> bool:
        with self._lock:
            return organization_id in self._memberships.get(user_id, set())

    def require_member(self, user_id: str, organization_id: str) -> None:
        """Raise ``AuthorizationError`` unless the user belongs to the organization."""
        if not self.is_member(user_id, organization_id):
            logger.warning(f"Denied {user_id} access to organization {organization_id}")
            raise AuthorizationError()


# Global service instance
access_service = AccessService(settings.organization_memberships)
