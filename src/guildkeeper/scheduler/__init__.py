"""
Periodic execution of background units.

- **task_runner.py**: Runs each registered unit in its own asyncio task on an
  interval or cron cadence with a random phase offset. Failures are recorded
  in the health registry and never stop the unit's schedule.

- **cron.py**: Pure schedule arithmetic (next cron fire time, next execution of
  a once/hourly/daily/weekly/monthly/custom scheduled message).
"""
