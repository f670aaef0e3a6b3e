"""calsync: mirror external calendars into a local store via sync tokens and push channels."""

__version__ = "0.1.0"
