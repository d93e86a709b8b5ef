"""
Entity and value types shared across Guildkeeper.

Persisted entities are slotted dataclasses whose field names match their
table columns, so the generic repository maps them without adapters.
"""
