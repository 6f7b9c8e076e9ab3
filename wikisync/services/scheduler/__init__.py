# Rate limiting and batch scheduling
from wikisync.services.scheduler.limiter import TokenBucket
from wikisync.services.scheduler.scheduler import BatchOutcome, BatchStatus, TaskScheduler

__all__ = ["TokenBucket", "TaskScheduler", "BatchOutcome", "BatchStatus"]
