from dataclasses import dataclass
from typing import Any, Callable, Dict


@dataclass(frozen=True)
class QueueBinding:
    """How the worker talks to one queue kind on the server."""
    name: str                                        # URL segment: /api/v1/worker/<name>/...
    key_of: Callable[[Dict[str, Any]], Any]          # lease key from a claim
    completion_body: Callable[[Any], Dict[str, Any]]  # handler result -> complete request fields
    report_progress: bool = False


def _events_body(result: Any) -> Dict[str, Any]:
    events = result.get("events", []) if isinstance(result, dict) else result
    return {"events": list(events or [])}


JOBS = QueueBinding(
    name="jobs",
    key_of=lambda claim: claim["job"]["id"],
    completion_body=lambda result: {"result": result or {}},
    report_progress=True,
)

EVENTS = QueueBinding(
    name="events",
    key_of=lambda claim: claim["batchId"],
    completion_body=_events_body,
)
