"""
Precision search services.

- dispatcher: queue items on demand, idempotency guard, mail-sync trigger
- pipeline: claim and run one queue item to a terminal state
- retry_policy: backoff re-enqueue of failed items, stale lease reporting
- worker: polling loop and start-up wiring
"""

from .dispatcher import InvalidArgument, PrecisionSearchDispatcher
from .events import MailSyncNotifier
from .pipeline import PrecisionSearchRunner, RunResult, ScopeUnavailableError
from .retry_policy import RetryPolicy
from .status import PrecisionSearchStatus
from .worker import PrecisionSearchWorker, Services, build_services

__all__ = [
    "InvalidArgument",
    "MailSyncNotifier",
    "PrecisionSearchDispatcher",
    "PrecisionSearchRunner",
    "PrecisionSearchStatus",
    "PrecisionSearchWorker",
    "RetryPolicy",
    "RunResult",
    "ScopeUnavailableError",
    "Services",
    "build_services",
]
