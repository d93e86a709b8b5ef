"""
Discord integration.

- **events_cog.py**: Forwards gateway events to the background runtime.
- **sender.py**: Message sending capability used by the scheduled jobs.
"""
