class NurlError(Exception):
    pass


class RequestNotFound(NurlError):
    def __init__(self, name: str, collection: str | None = None):
        self.name = name
        self.collection = collection
        where = f" in collection '{collection}'" if collection else ""
        super().__init__(f"Request '{name}' not found{where}")


class ChainNotFound(NurlError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Chain '{name}' not found")


class TransportError(NurlError):
    """No response was obtained (connection refused, timeout, ...)."""
