import logging
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from media_queue.db.models import Asset
from media_queue.domain.errors import ResultSinkError
from media_queue.domain.states import ProxyStatus

logger = logging.getLogger(__name__)


async def set_proxy_status(session: AsyncSession, asset_id: int, status: ProxyStatus) -> None:
    await session.execute(
        update(Asset)
        .where(Asset.id == asset_id)
        .values(proxy_status=status)
        .execution_options(synchronize_session=False)
    )


async def apply_job_result(session: AsyncSession, asset_id: int, result: dict[str, Any]) -> Optional[Asset]:
    """
    Writes a finished proxy job's output onto its asset.

    Only keys present in `result` are touched; metadata is merged into the
    asset's existing metadata. Database errors surface as ResultSinkError so
    the caller can keep the job claimed.
    """
    try:
        asset = await session.get(Asset, asset_id, with_for_update=True)
        if asset is None:
            # Asset was removed from the catalog after the job was queued
            logger.warning("Asset %s no longer exists, dropping job result", asset_id)
            return None

        if "thumbnailPath" in result:
            asset.thumbnail_path = result["thumbnailPath"] or None
        if "proxyPath" in result:
            asset.proxy_path = result["proxyPath"] or None
        if result.get("proxyStatus"):
            asset.proxy_status = ProxyStatus(result["proxyStatus"])
        else:
            asset.proxy_status = ProxyStatus.READY
        if result.get("metadata") is not None:
            asset.asset_metadata = {**(asset.asset_metadata or {}), **result["metadata"]}

        await session.flush()
        return asset
    except (SQLAlchemyError, ValueError, TypeError) as e:
        raise ResultSinkError(f"Failed to store result for asset {asset_id}: {e}") from e
