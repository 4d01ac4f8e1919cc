"""Relay Slack mentions of one user to reminders and desktop notifications."""

__version__ = "0.1.0"
