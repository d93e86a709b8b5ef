"""
Configuration management for Guildkeeper.

- **app_configuration.py**: YAML configuration loader with typed, validated
  sections (scheduler, reminders, retention, queues, notifications, health,
  analytics, detection defaults). Falls back to defaults on a missing file.

- **detection_settings.py**: Per-guild detector settings with an in-memory
  cache and write-through persistence.
"""
