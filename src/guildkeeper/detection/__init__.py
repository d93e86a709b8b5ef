"""
Automatic abuse detection.

- **threshold_detector.py**: Spam (sliding window), caps and toxicity checks.
- **auto_moderation.py**: Runs the detectors per guild settings and reports
  triggers as flagged events, audit entries and admin alerts.
"""
