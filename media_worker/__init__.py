from .client import LeaseLostError, ResultRejectedError, WorkerClient
from .kinds import EVENTS, JOBS, QueueBinding
from .loop import Handler, Middleware, WorkerLoop
from .registry import ActiveLease, LeaseRegistry

__all__ = [
    "ActiveLease",
    "EVENTS",
    "Handler",
    "JOBS",
    "LeaseLostError",
    "LeaseRegistry",
    "Middleware",
    "QueueBinding",
    "ResultRejectedError",
    "WorkerClient",
    "WorkerLoop",
]
