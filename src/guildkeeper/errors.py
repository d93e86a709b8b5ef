"""Exception types shared across Guildkeeper."""


class GuildkeeperError(Exception):
    """Base class for errors raised by Guildkeeper itself."""


class ConfigurationError(GuildkeeperError, ValueError):
    """A configuration value was rejected when it was accepted, not when it was used."""


class PersistenceError(GuildkeeperError):
    """A database operation failed. Usually transient (locked database, I/O)."""


class DeliveryError(GuildkeeperError):
    """A message could not be delivered to a Discord channel or user."""
