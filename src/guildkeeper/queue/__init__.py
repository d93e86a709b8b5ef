"""
Buffered writes off the Discord event path.

- **ingestion_queue.py**: Bounded drop-oldest queue with a single consumer,
  retries and loss accounting.
- **audit_log.py**: Audit trail and message-log facades built on it.
"""
