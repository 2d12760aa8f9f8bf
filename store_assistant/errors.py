class InvalidTurnRequest(ValueError):
    """Raised when a turn request cannot be processed at all (e.g. no question text)."""
