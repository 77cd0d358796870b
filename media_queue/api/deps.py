from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_queue.db.session import get_db_session, get_session_factory
from media_queue.queues.events import EventBatchQueue
from media_queue.queues.jobs import ProxyJobQueue
from media_queue.queues.registry import get_event_queue, get_job_queue

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]

# For work that opens its own sessions (maintenance)
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

JobQueue = Annotated[ProxyJobQueue, Depends(get_job_queue)]
EventQueue = Annotated[EventBatchQueue, Depends(get_event_queue)]
