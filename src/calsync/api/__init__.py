"""HTTP surface: the Google push webhook and the calendar-source API."""
