class NotificationError(Exception):
    """A notification could not be delivered through a channel."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.details = details or {}
