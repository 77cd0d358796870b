import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from media_queue.settings import settings

logger = logging.getLogger(__name__)

WORKER_SCHEME = "Worker"

_basic = HTTPBasic(auto_error=False)


def _matches(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class WorkerAuth:
    """
    Shared-secret check for the worker surface.

    Expects `Authorization: Worker <key>`, a scheme distinct from end-user
    bearer tokens. With no WORKER_API_KEY configured every call is refused.
    """

    async def __call__(self, authorization: Optional[str] = Header(None)) -> None:
        expected = settings.WORKER_API_KEY
        if not expected:
            raise HTTPException(status_code=403, detail="Worker API is not enabled (WORKER_API_KEY not configured)")

        if not authorization or not authorization.startswith(f"{WORKER_SCHEME} "):
            raise HTTPException(
                status_code=401,
                detail=f"Missing or invalid Authorization header (expected: {WORKER_SCHEME} <key>)",
            )

        key = authorization[len(WORKER_SCHEME) + 1:]
        if not _matches(key, expected):
            logger.warning("Rejected worker request with invalid API key")
            raise HTTPException(status_code=401, detail="Invalid worker API key")


require_worker = WorkerAuth()


async def require_ingest_credentials(
    credentials: Optional[HTTPBasicCredentials] = Depends(_basic),
) -> None:
    if not settings.INGEST_USER:
        raise HTTPException(status_code=403, detail="Event ingest is not enabled (INGEST_USER not configured)")

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing credentials", headers={"WWW-Authenticate": "Basic"})

    user_ok = _matches(credentials.username, settings.INGEST_USER)
    pass_ok = _matches(credentials.password, settings.INGEST_PASSWORD)
    if not (user_ok and pass_ok):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
