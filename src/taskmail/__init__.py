# src/taskmail/__init__.py

"""Due-date reminders, overdue escalation and reply-by-email task actions."""

__version__ = "0.1.0"
