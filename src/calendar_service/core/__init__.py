# Calendar core: errors, time utilities, recurrence, free/busy, ICS, RSVP
