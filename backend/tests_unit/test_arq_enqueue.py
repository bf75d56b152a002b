"""
ARQ Enqueue Tests (Unit)
========================

WHAT: Unit tests for the batch job enqueue helpers.
WHY: A timezone change whose recompute is silently not queued leaves every
     historical bucket on the previous zone.

NOTE:
Redis is never contacted; the arq pool is replaced with a mock.

REFERENCES:
- backend/salesmetrics/workers/arq_enqueue.py
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from salesmetrics.errors import JobEnqueueFailed
from salesmetrics.workers import arq_enqueue


def _pool(job):
    pool = MagicMock()
    pool.enqueue_job = AsyncMock(return_value=job)
    return pool


def test_repeated_recompute_requests_are_all_queued() -> None:
    account_id = uuid4()
    pool = _pool(SimpleNamespace(job_id="job-1"))

    with patch.object(arq_enqueue, "get_arq_pool", new=AsyncMock(return_value=pool)):
        first = asyncio.run(arq_enqueue.enqueue_recompute_local_dates(account_id))
        second = asyncio.run(arq_enqueue.enqueue_recompute_local_dates(account_id))

    assert first == second == "job-1"
    assert pool.enqueue_job.await_count == 2
    for call in pool.enqueue_job.await_args_list:
        assert call.args == ("recompute_local_dates_job", str(account_id))
        assert "_job_id" not in call.kwargs
        assert call.kwargs["_queue_name"] == arq_enqueue.QUEUE_NAME


def test_rejected_job_raises() -> None:
    account_id = uuid4()

    with patch.object(arq_enqueue, "get_arq_pool", new=AsyncMock(return_value=_pool(None))):
        with pytest.raises(JobEnqueueFailed) as exc_info:
            asyncio.run(arq_enqueue.enqueue_backfill_identities(account_id))

    assert exc_info.value.status_code == 503
    assert exc_info.value.details == {"job": "backfill_identities_job", "account_id": str(account_id)}


def test_reset_pool_closes_and_forgets_it() -> None:
    pool = MagicMock()
    pool.close = AsyncMock()

    with patch.object(arq_enqueue, "_arq_pool", new=pool):
        asyncio.run(arq_enqueue.reset_arq_pool())
        assert arq_enqueue._arq_pool is None

    pool.close.assert_awaited_once()
