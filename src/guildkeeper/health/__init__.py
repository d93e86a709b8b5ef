"""Health tracking for background units."""
