class RecordStoreError(Exception):
    """A read or write against the record store failed."""


class InvalidPathError(RecordStoreError, ValueError):
    """A path cannot be used as a record store location."""
