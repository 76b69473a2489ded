"""
xpengine.services.platform — Chat Platform Role Adapter
========================================================

The reconciler only needs three operations from the chat platform::

    await platform.get_member_roles(guild_id, user_id)   → set[str] | None
    await platform.grant_role(guild_id, user_id, role_id, reason)
    await platform.revoke_role(guild_id, user_id, role_id, reason)

:class:`DiscordPlatform` implements them on top of a discord.py client.
Every failure surfaces as :class:`~xpengine.errors.PlatformError`.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import discord

from xpengine.errors import PlatformError

logger = logging.getLogger(__name__)


@runtime_checkable
class Platform(Protocol):
    async def get_member_roles(self, guild_id: str, user_id: str) -> set[str] | None:
        """Role ids held by the member, or ``None`` if the member is gone."""
        ...

    async def grant_role(self, guild_id: str, user_id: str, role_id: str, reason: str) -> None: ...

    async def revoke_role(self, guild_id: str, user_id: str, role_id: str, reason: str) -> None: ...


class DiscordPlatform:
    """discord.py implementation of :class:`Platform`.

    Before touching a role it checks the bot has ``manage_roles``, that the
    role is not integration-managed, and that the role sits below the bot's
    top role.
    """

    def __init__(self, client: discord.Client) -> None:
        self._client = client

    async def _guild(self, guild_id: str) -> discord.Guild:
        guild = self._client.get_guild(int(guild_id))
        if guild is not None:
            return guild
        try:
            return await self._client.fetch_guild(int(guild_id))
        except discord.HTTPException as exc:
            raise PlatformError("Guild not reachable", {"guild_id": guild_id}) from exc

    async def _member(self, guild: discord.Guild, user_id: str) -> discord.Member | None:
        member = guild.get_member(int(user_id))
        if member is not None:
            return member
        try:
            return await guild.fetch_member(int(user_id))
        except discord.NotFound:
            return None
        except discord.HTTPException as exc:
            raise PlatformError("Member lookup failed", {"guild_id": str(guild.id), "user_id": user_id}) from exc

    def _manageable_role(self, guild: discord.Guild, role_id: str) -> discord.Role:
        details = {"guild_id": str(guild.id), "role_id": role_id}
        me = guild.me
        if me is None or not me.guild_permissions.manage_roles:
            raise PlatformError("Bot lacks the Manage Roles permission", details)
        role = guild.get_role(int(role_id))
        if role is None:
            raise PlatformError("Role not found", details)
        if role.managed:
            raise PlatformError("Role is managed by an integration", details)
        if role >= me.top_role:
            raise PlatformError("Role is above the bot's highest role", details)
        return role

    async def get_member_roles(self, guild_id: str, user_id: str) -> set[str] | None:
        guild = await self._guild(guild_id)
        member = await self._member(guild, user_id)
        if member is None:
            return None
        return {str(role.id) for role in member.roles}

    async def _apply(self, guild_id: str, user_id: str, role_id: str, reason: str, *, grant: bool) -> None:
        guild = await self._guild(guild_id)
        member = await self._member(guild, user_id)
        if member is None:
            raise PlatformError("Member not found", {"guild_id": guild_id, "user_id": user_id})
        role = self._manageable_role(guild, role_id)
        try:
            if grant:
                await member.add_roles(role, reason=reason)
            else:
                await member.remove_roles(role, reason=reason)
        except discord.HTTPException as exc:
            action = "grant" if grant else "revoke"
            raise PlatformError(
                f"Role {action} failed: {exc}",
                {"guild_id": guild_id, "user_id": user_id, "role_id": role_id},
            ) from exc

    async def grant_role(self, guild_id: str, user_id: str, role_id: str, reason: str) -> None:
        await self._apply(guild_id, user_id, role_id, reason, grant=True)

    async def revoke_role(self, guild_id: str, user_id: str, role_id: str, reason: str) -> None:
        await self._apply(guild_id, user_id, role_id, reason, grant=False)
