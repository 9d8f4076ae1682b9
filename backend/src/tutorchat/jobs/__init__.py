"""Background job queue and worker."""

from tutorchat.jobs.queue import (
    JOB_CHAT_MAINTAIN,
    JOB_CHAT_PATH_INDEX,
    JOB_CHAT_PATH_NODE_INDEX,
    JOB_CHAT_PURGE,
    JOB_CHAT_REBUILD,
    JOB_CHAT_RESPOND,
    JobQueue,
    QueueStats,
)

__all__ = [
    "JOB_CHAT_MAINTAIN",
    "JOB_CHAT_PATH_INDEX",
    "JOB_CHAT_PATH_NODE_INDEX",
    "JOB_CHAT_PURGE",
    "JOB_CHAT_REBUILD",
    "JOB_CHAT_RESPOND",
    "JobQueue",
    "QueueStats",
]
