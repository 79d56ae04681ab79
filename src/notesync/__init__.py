"""notesync: local-first note store with cloud sync and a recoverable trash."""

__version__ = "0.1.0"
