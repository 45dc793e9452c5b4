"""Realtime delivery of rows appended to the VRCX SQLite database"""

__version__ = "0.1.0"
