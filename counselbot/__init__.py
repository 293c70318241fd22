"""
Counselbot

Guided conversational booking of counseling appointments with
conflict-free provider calendars and exactly-once reminders.
"""

__version__ = "1.0.0"
