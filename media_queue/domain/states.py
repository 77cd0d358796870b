from enum import StrEnum, auto


class LeaseStatus(StrEnum):
    PENDING = auto()    # Waiting for a worker
    CLAIMED = auto()    # Leased to exactly one worker
    COMPLETED = auto()  # Terminal, result stored
    FAILED = auto()     # Terminal, error stored


TERMINAL_STATUSES = (LeaseStatus.COMPLETED, LeaseStatus.FAILED)


class QueueKind(StrEnum):
    JOBS = auto()    # Proxy/thumbnail generation, keyed by job id
    EVENTS = auto()  # Ingested log event batches, keyed by batch id


class JobType(StrEnum):
    FULL = auto()
    PROXY = auto()
    METADATA = auto()


class ProxyStatus(StrEnum):
    NONE = auto()
    QUEUED = auto()
    GENERATING = auto()
    READY = auto()
    FAILED = auto()


class SourceProtocol(StrEnum):
    ELASTICSEARCH = auto()
    LOGSTASH = auto()
