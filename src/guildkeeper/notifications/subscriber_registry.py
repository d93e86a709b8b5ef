"""
Who receives notifications: dashboard users and the roles they hold.

Audiences are small resolver objects so callers can say "all admins" or
"admins of guild X" without knowing how roles are stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from guildkeeper.database.repository import Repository, Where
from guildkeeper.datatypes.moderation_datatypes import (
    GLOBAL_ADMIN_ROLES,
    GUILD_ADMIN_ROLES,
    AccessRole,
    AdminAccess,
)
from guildkeeper.errors import ConfigurationError
from guildkeeper.util.logger import get_logger

logger = get_logger("subscriber_registry")


class SubscriberRegistry:
    """Role grants stored in ``admin_access``."""

    def __init__(self, repository: Repository[AdminAccess]) -> None:
        self._repository = repository

    async def grant(self, user_id: str, role: AccessRole, guild_id: Optional[str] = None) -> AdminAccess:
        """Give ``user_id`` a role. Global roles take no guild; guild roles require one."""
        if role in GLOBAL_ADMIN_ROLES and guild_id is not None:
            raise ConfigurationError(f"{role.value} is a global role and cannot be scoped to a guild")
        if role not in GLOBAL_ADMIN_ROLES and guild_id is None:
            raise ConfigurationError(f"{role.value} requires a guild")
        access = AdminAccess(user_id=user_id, role=role, guild_id=guild_id)
        await self._repository.upsert(access)
        logger.info("[SUBSCRIBERS] Granted %s to user %s (guild %s)", role.value, user_id, guild_id or "*")
        return access

    async def revoke(self, user_id: str, role: AccessRole, guild_id: Optional[str] = None) -> bool:
        removed = await self._repository.delete(AdminAccess(user_id=user_id, role=role, guild_id=guild_id))
        if removed:
            logger.info("[SUBSCRIBERS] Revoked %s from user %s (guild %s)", role.value, user_id, guild_id or "*")
        return removed

    async def users_with_roles(self, roles: Sequence[AccessRole], guild_id: Optional[str] = None) -> List[str]:
        where = Where.is_in("role", list(roles)) & Where.eq("guild_id", guild_id)
        rows = await self._repository.find_where(where)
        return sorted({row.user_id for row in rows})

    async def resolve_admins(self, guild_id: Optional[str] = None) -> List[str]:
        """Global admins when ``guild_id`` is None, otherwise that guild's owners and admins."""
        if guild_id is None:
            return await self.users_with_roles(GLOBAL_ADMIN_ROLES)
        return await self.users_with_roles(GUILD_ADMIN_ROLES, guild_id)


class Audience(Protocol):
    async def resolve(self, registry: SubscriberRegistry) -> List[str]: ...


@dataclass(frozen=True)
class AllAdmins:
    async def resolve(self, registry: SubscriberRegistry) -> List[str]:
        return await registry.resolve_admins()


@dataclass(frozen=True)
class GuildAdmins:
    guild_id: str

    async def resolve(self, registry: SubscriberRegistry) -> List[str]:
        return await registry.resolve_admins(self.guild_id)


@dataclass(frozen=True)
class Users:
    user_ids: tuple

    async def resolve(self, registry: SubscriberRegistry) -> List[str]:
        return list(dict.fromkeys(self.user_ids))
