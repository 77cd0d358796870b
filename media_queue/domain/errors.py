class QueueError(Exception):
    """Base exception for work queue errors."""
    pass


class ItemNotFoundError(QueueError):
    def __init__(self, kind, key):
        super().__init__(f"{kind} item {key} not found")


class LeaseNotHeldError(QueueError):
    """The caller does not hold a claim on the item (stale or foreign)."""

    def __init__(self, key, worker_id):
        super().__init__(f"Item {key} not found or not claimed by worker {worker_id}")


class ResultSinkError(QueueError):
    """Persisting a completed item's result failed; the lease is kept."""
    pass
