"""
Guildkeeper - background execution and eventing layer for a Discord bot.

Core Components:

- **Scheduled Task Runner**: Hosts the periodic jobs (reminder delivery,
  scheduled messages, retention sweeps, analytics rollups) on interval or cron
  cadences, each in its own asyncio task
- **Ingestion Queues**: Bounded drop-oldest buffers that take audit and
  message-log writes off the Discord event path
- **Threshold Detector**: Sliding-window spam, caps and toxicity detection
  with per-guild settings
- **Notification Fan-out**: Deduplicated, persisted and pushed notifications
  for dashboard admins
- **Health Registry**: Last run, last error and failure streak of every unit

Usage:
    from guildkeeper.main import main
    main()
"""
