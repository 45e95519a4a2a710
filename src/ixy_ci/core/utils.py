from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Type, TypeVar

import structlog

from .models import Repository

log = structlog.get_logger(__name__)

T = TypeVar("T")


def retry(
    retries: int,
    delay_s: float,
    fn: Callable[[], T],
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """Call ``fn`` until it succeeds, at most ``retries + 1`` times.

    Sleeps ``delay_s`` between attempts. The last failure propagates.
    """
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except exceptions as e:
            log.debug("retrying_operation", attempt=attempt, retries=retries, error=str(e))
            time.sleep(delay_s)
    return fn()


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """RFC 3339 UTC timestamp with second precision, e.g. 2019-10-01T12:00:00Z."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def artifact_prefix(repository: Repository, branch: str, now: Optional[datetime] = None) -> str:
    # Branch names may contain '/', which must not create subdirectories.
    branch = branch.replace("/", "_")
    return f"{repository.user}__{repository.name}__{branch}__{utc_timestamp(now)}"
