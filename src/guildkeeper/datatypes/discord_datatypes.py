"""
Type-safe wrappers for Discord snowflake identifiers.

Snowflakes are 64-bit integers but are stored as TEXT in the database and
travel as strings in push payloads, so each wrapper keeps the canonical string
form and converts to ``int`` only at the Discord API boundary.
"""

from __future__ import annotations

from typing import Union

import discord


class Snowflake:
    """
    Common behaviour for the snowflake wrappers.

    Two wrappers compare equal only when they are the same kind of id, but a
    wrapper also compares equal to the bare ``int`` or ``str`` form of its
    value, which keeps lookups from database rows cheap.

    Example:
        >>> GuildID(123) == "123"
        True
        >>> GuildID(123) == UserID(123)
        False
    """

    __slots__ = ("_value",)

    def __init__(self, value: Union[str, int, "Snowflake"]) -> None:
        if isinstance(value, Snowflake):
            self._value = value._value
        elif isinstance(value, bool):
            raise ValueError(f"Cannot create {type(self).__name__} from bool")
        elif isinstance(value, int):
            if value < 0:
                raise ValueError(f"{type(self).__name__} cannot be negative: {value}")
            self._value = str(value)
        elif isinstance(value, str):
            parsed = int(value.strip())
            if parsed < 0:
                raise ValueError(f"{type(self).__name__} cannot be negative: {value}")
            self._value = str(parsed)
        else:
            raise ValueError(f"Cannot create {type(self).__name__} from {type(value).__name__}: {value}")

    def to_int(self) -> int:
        """Return the snowflake as an integer for Discord API calls."""
        return int(self._value)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._value!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Snowflake):
            return type(self) is type(other) and self._value == other._value
        if isinstance(other, str):
            return self._value == other
        if isinstance(other, int) and not isinstance(other, bool):
            return self._value == str(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)


class UserID(Snowflake):
    """Discord user snowflake."""

    __slots__ = ()

    @classmethod
    def from_user(cls, member: Union[discord.Member, discord.User]) -> "UserID":
        return cls(member.id)


class GuildID(Snowflake):
    """Discord guild snowflake."""

    __slots__ = ()

    @classmethod
    def from_guild(cls, guild: discord.Guild) -> "GuildID":
        return cls(guild.id)


class ChannelID(Snowflake):
    """Discord channel snowflake."""

    __slots__ = ()

    @classmethod
    def from_channel(cls, channel: discord.abc.Snowflake) -> "ChannelID":
        return cls(channel.id)
