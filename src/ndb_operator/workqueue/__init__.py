"""Work queue of NdbCluster keys awaiting reconciliation."""

from ndb_operator.workqueue.queue import WorkQueue
from ndb_operator.workqueue.ratelimit import (
    BackoffConfig,
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimiter,
    default_controller_rate_limiter,
)

__all__ = [
    "BackoffConfig",
    "BucketRateLimiter",
    "ItemExponentialFailureRateLimiter",
    "MaxOfRateLimiter",
    "RateLimiter",
    "WorkQueue",
    "default_controller_rate_limiter",
]
