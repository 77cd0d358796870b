from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from media_queue.db.session import Base
from media_queue.domain.states import JobType, LeaseStatus, ProxyStatus, SourceProtocol

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class LeaseItemMixin:
    """
    Lease columns shared by every queue table.

    claimed_by/claimed_at/last_heartbeat_at are only non-null while
    status == claimed; every transition writes them in the same statement.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    status: Mapped[LeaseStatus] = mapped_column(String(16), default=LeaseStatus.PENDING, nullable=False)
    claimed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Claim gate; only moves past created_at when a failed item is retried with backoff
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonColumn, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @declared_attr.directive
    def __table_args__(cls):
        return (
            # FIFO claim scan
            Index(f"ix_{cls.__tablename__}_claim", "status", "created_at", "id"),
            # Reaper scan
            Index(f"ix_{cls.__tablename__}_heartbeat", "status", "last_heartbeat_at"),
        )


class ProxyJob(LeaseItemMixin, Base):
    __tablename__ = "proxy_jobs"

    asset_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    space_name: Mapped[str] = mapped_column(String, nullable=False)
    primary_file_path: Mapped[str] = mapped_column(String, nullable=False)
    asset_type: Mapped[str] = mapped_column(String, nullable=False)
    job_type: Mapped[JobType] = mapped_column(String(16), default=JobType.FULL, nullable=False)
    stage: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class EventBatch(LeaseItemMixin, Base):
    __tablename__ = "event_batches"

    batch_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    source_protocol: Mapped[SourceProtocol] = mapped_column(
        String(16), default=SourceProtocol.ELASTICSEARCH, nullable=False
    )
    event_count_estimate: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    events_processed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Asset(Base):
    """Catalog asset row the proxy job results are written into."""
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    space_name: Mapped[str] = mapped_column(String, index=True, nullable=False)
    proxy_status: Mapped[ProxyStatus] = mapped_column(String(16), default=ProxyStatus.NONE, nullable=False)
    thumbnail_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    proxy_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    asset_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JsonColumn, nullable=True)


class StorageEvent(Base):
    """Parsed event row produced from an event batch."""
    __tablename__ = "storage_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    event_type: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    event_action: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    timestamp: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    source_host: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    space_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    pool_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    storage_node_group: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    file_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    bytes_transferred: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), default="info", nullable=False)
