# trader_bias/errors.py


class AdapterError(Exception):
    """Fatal exchange adapter error."""

    def __init__(self, adapter: str, message: str):
        self.adapter = adapter
        self.message = message
        super().__init__(f"{adapter}: {message}")


class SubscriptionRejected(AdapterError):
    pass


class FrameParseError(Exception):
    pass


class PersistenceError(Exception):
    pass


class StoreDegraded(PersistenceError):
    """Raised for writes while the prediction store is degraded."""


class InvalidQuery(Exception):
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)
