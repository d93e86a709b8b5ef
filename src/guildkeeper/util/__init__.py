"""
Utility helpers for Guildkeeper.

- **logger.py**: Centralized logging configuration with colored console output
  through prompt_toolkit, a rotating per-session log file, and suppression of
  noisy third-party loggers.
"""
