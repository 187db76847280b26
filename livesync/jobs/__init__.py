"""Scheduled workers: change-detection poller, window sync, post-match finalizer and the live safety nets."""
