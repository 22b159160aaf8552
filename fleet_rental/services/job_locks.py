from __future__ import annotations

import threading
import zlib
from collections.abc import Iterator
from contextlib import contextmanager


LOCK_STRIPES = 64
# Reentrant so a transition can open a nested extension step on the same job.
_JOB_LOCKS = [threading.RLock() for _ in range(LOCK_STRIPES)]


def _stripe_for(job_number: str) -> threading.RLock:
    key = (job_number or "").strip().upper().encode("utf-8")
    return _JOB_LOCKS[zlib.crc32(key) % LOCK_STRIPES]


@contextmanager
def job_lock(job_number: str) -> Iterator[None]:
    lock = _stripe_for(job_number)
    with lock:
        yield
