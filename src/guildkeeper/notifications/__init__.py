"""
Admin notifications.

- **notification_service.py**: Per-recipient dedup, persistence and push.
- **subscriber_registry.py**: Role grants and audience resolvers.
- **push_hub.py**: In-process live connections for real-time delivery.
- **dedup_index.py**: Atomic in-memory dedup reservations.
- **connection_notifier.py**: Gateway and guild lifecycle alerts.
"""
