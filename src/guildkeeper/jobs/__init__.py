"""
Scheduled units hosted by the task runner.

- **reminder_delivery.py**: Sends due reminders by DM with bounded concurrency
  and retry.
- **scheduled_messages.py**: Posts due scheduled messages and advances their
  next execution time.
- **retention.py**: Batched deletion of expired log, analytics and
  notification rows.
- **analytics_rollup.py**: Hourly and daily activity aggregates.
- **maintenance.py**: Reclaims idle detector windows and expired dedup
  reservations.
"""
