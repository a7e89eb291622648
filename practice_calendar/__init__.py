"""Calendar backend for the practice-management application."""

APP_NAME = "PracticeCalendar"

__all__ = ["APP_NAME"]
