"""Eventsight - behavioral analytics over PostHog events."""

__version__ = "1.0.0"
