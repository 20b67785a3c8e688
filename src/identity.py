"""
Kudos Integrity - Identity and Role Resolution

Authentication happens upstream; the engine only needs to know, for an actor
id, which role and organization it belongs to.
"""

import logging
from abc import ABC, abstractmethod

from models import USERS, Actor, Role
from storage.base import RecordStore

logger = logging.getLogger(__name__)


class IdentityResolver(ABC):
    @abstractmethod
    def resolve(self, actor_id: str) -> Actor:
        """Return the actor for an id. Unknown ids resolve to a plain USER."""
        pass


class StoreIdentityResolver(IdentityResolver):
    """Reads actors from the ``users`` collection of the record store."""

    def __init__(self, store: RecordStore):
        self.store = store

    def resolve(self, actor_id: str) -> Actor:
        record = self.store.get(USERS, actor_id)
        if record is None:
            logger.debug(f"No user record for {actor_id}, treating as USER")
            return Actor(id=actor_id)

        return Actor(
            id=actor_id,
            role=Role.parse(record.get("role")),
            organization_id=record.get("organization_id"),
            email=record.get("email"),
            name=record.get("name"),
        )

    def register(self, actor: Actor) -> None:
        """Insert or replace a user record."""
        data = {
            "id": actor.id,
            "role": actor.role.value,
            "organization_id": actor.organization_id,
            "email": actor.email,
            "name": actor.name,
        }
        if self.store.get(USERS, actor.id) is None:
            self.store.create(USERS, actor.id, data)
        else:
            self.store.update(USERS, actor.id, data)
