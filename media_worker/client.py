import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class LeaseLostError(Exception):
    """The server no longer considers this worker the holder of the lease."""

    def __init__(self, kind: str, key: Any):
        super().__init__(f"Lease on {kind} item {key} is no longer held")
        self.kind = kind
        self.key = key


class ResultRejectedError(Exception):
    """The server refused a completion body (4xx other than 404)."""

    def __init__(self, kind: str, key: Any, status_code: int, detail: str):
        super().__init__(f"Result for {kind} item {key} rejected ({status_code}): {detail}")
        self.kind = kind
        self.key = key
        self.status_code = status_code


class WorkerClient:
    """
    HTTP client for the worker API.

    Transport failures are logged and reported as None/False so the poll loop
    keeps going. A 404 on a lease operation means the item was reclaimed or
    finished elsewhere and raises LeaseLostError.
    """

    def __init__(
        self,
        base_url: str,
        worker_id: str,
        api_key: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v1/worker",
            headers={"Authorization": f"Worker {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    def _body(self, **fields) -> Dict[str, Any]:
        return {"workerId": self.worker_id, **fields}

    async def _lease_call(self, kind: str, key: Any, action: str, body: Dict[str, Any]) -> httpx.Response:
        resp = await self.client.put(f"/{kind}/{key}/{action}", json=body)
        if resp.status_code == 404:
            raise LeaseLostError(kind, key)
        resp.raise_for_status()
        return resp

    async def status(self) -> Optional[Dict[str, Any]]:
        try:
            resp = await self.client.get("/status")
            resp.raise_for_status()
            return resp.json().get("data")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Status check failed for worker=%s: %s", self.worker_id, e)
            return None

    async def claim(self, kind: str) -> Optional[Dict[str, Any]]:
        """Claims the oldest pending item of `kind`; None when there is no work."""
        try:
            resp = await self.client.post(f"/{kind}/claim", json=self._body())
            resp.raise_for_status()
            return resp.json().get("data")
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log_fn = logger.error if status_code in (401, 403) else logger.warning
            log_fn("Claim rejected for worker=%s queue=%s status=%s", self.worker_id, kind, status_code)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Claim failed for worker=%s queue=%s: %s", self.worker_id, kind, e)
            return None

    async def heartbeat(self, kind: str, key: Any) -> bool:
        try:
            await self._lease_call(kind, key, "heartbeat", self._body())
            return True
        except httpx.HTTPError as e:
            logger.warning("Heartbeat failed for worker=%s %s=%s: %s", self.worker_id, kind, key, e)
            return False

    async def progress(self, kind: str, key: Any, stage: Optional[str] = None) -> bool:
        try:
            await self._lease_call(kind, key, "progress", self._body(stage=stage))
            return True
        except httpx.HTTPError as e:
            logger.warning("Progress report failed for worker=%s %s=%s: %s", self.worker_id, kind, key, e)
            return False

    async def complete(self, kind: str, key: Any, body: Dict[str, Any]) -> bool:
        """
        True once the server accepted the result. A malformed result (4xx)
        raises ResultRejectedError so the caller can fail the item instead
        of leaving it for the reaper; 5xx and network errors return False.
        """
        try:
            await self._lease_call(kind, key, "complete", self._body(**body))
            return True
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if 400 <= status_code < 500:
                raise ResultRejectedError(kind, key, status_code, e.response.text[:500]) from e
            logger.warning("Complete failed for worker=%s %s=%s: %s", self.worker_id, kind, key, e)
            return False
        except httpx.HTTPError as e:
            logger.warning("Complete failed for worker=%s %s=%s: %s", self.worker_id, kind, key, e)
            return False

    async def fail(self, kind: str, key: Any, error: str) -> bool:
        try:
            await self._lease_call(kind, key, "fail", self._body(error=error))
            return True
        except httpx.HTTPError as e:
            logger.warning("Fail request failed for worker=%s %s=%s: %s", self.worker_id, kind, key, e)
            return False

    async def close(self):
        await self.client.aclose()
