"""Multi-context calendar service: calendars, recurring events, free/busy, ICS and RSVP."""

__version__ = "0.1.0"
