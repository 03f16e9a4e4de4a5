"""
Per-allocation transaction scope.

Every write that can change an allocation's committed-hours total runs inside
``allocation_transaction(...)``:

    with allocation_transaction(alloc_key(allocation_id)):
        alloc = load_allocation_for_update(allocation_id)
        ...                      # validate + write
    # committed here, or rolled back if the block raised

Writers on the same allocation are serialized by a striped in-process
``threading.RLock`` pool; the row itself is read with ``SELECT ... FOR UPDATE``
where the dialect supports it (SQLite ignores the clause). New requests go
through ``request_transaction``, which also holds the key of the PENDING row
they fold into. Writers on different allocations only contend
when their keys hash to the same stripe.
"""

import logging
import threading
import zlib
from contextlib import contextmanager

from hourbook.core.exceptions import ApprovalConflictError, NotFoundError
from hourbook.models import db
from hourbook.models.allocation import PhaseAllocation, PhaseApprovalStatus, WeeklyAllocation

logger = logging.getLogger(__name__)

_STRIPES = 64
_locks = [threading.RLock() for _ in range(_STRIPES)]


def alloc_key(allocation_id: str) -> str:
    return f"alloc:{allocation_id}"


def pair_key(consultant_id: str, phase_id: str) -> str:
    """Key for (consultant, phase): guards creation and folding of requests."""
    return f"pair:{consultant_id}:{phase_id}"


def _stripe(key: str) -> int:
    return zlib.crc32(key.encode("utf-8")) % _STRIPES


@contextmanager
def locked(*keys):
    """Hold the stripes for ``keys``, always acquired in ascending stripe order."""
    stripes = sorted({_stripe(k) for k in keys if k})
    acquired = []
    try:
        for idx in stripes:
            _locks[idx].acquire()
            acquired.append(idx)
        yield
    finally:
        for idx in reversed(acquired):
            _locks[idx].release()


@contextmanager
def allocation_transaction(*keys):
    """Lock ``keys``, run the block, commit; roll back before unlocking on error."""
    with locked(*keys):
        try:
            yield db.session
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


def load_allocation_for_update(allocation_id: str) -> PhaseAllocation:
    alloc = (
        PhaseAllocation.query
        .populate_existing()
        .with_for_update()
        .filter(PhaseAllocation.id == allocation_id)
        .first()
    )
    if alloc is None:
        raise NotFoundError(resource="PhaseAllocation", resource_id=allocation_id)
    return alloc


def load_weekly_for_update(weekly_id: str) -> WeeklyAllocation:
    week = (
        WeeklyAllocation.query
        .populate_existing()
        .with_for_update()
        .filter(WeeklyAllocation.id == weekly_id)
        .first()
    )
    if week is None:
        raise NotFoundError(resource="WeeklyAllocation", resource_id=weekly_id)
    return week


def peek_allocation(allocation_id: str) -> PhaseAllocation:
    """Unlocked read, used only to work out which keys to lock."""
    alloc = db.session.get(PhaseAllocation, allocation_id)
    if alloc is None:
        raise NotFoundError(resource="PhaseAllocation", resource_id=allocation_id)
    return alloc


def peek_weekly(weekly_id: str) -> WeeklyAllocation:
    week = db.session.get(WeeklyAllocation, weekly_id)
    if week is None:
        raise NotFoundError(resource="WeeklyAllocation", resource_id=weekly_id)
    return week


_REQUEST_ATTEMPTS = 3


def pending_request(consultant_id: str, phase_id: str, for_update: bool = False) -> PhaseAllocation | None:
    """Oldest PENDING allocation for (consultant, phase), if any."""
    query = PhaseAllocation.query
    if for_update:
        query = query.populate_existing().with_for_update()
    return (
        query
        .filter_by(
            consultant_id=consultant_id,
            phase_id=phase_id,
            approval_status=PhaseApprovalStatus.PENDING.value,
        )
        .order_by(PhaseAllocation.created_at)
        .first()
    )


@contextmanager
def request_transaction(consultant_id: str, phase_id: str, *extra_keys):
    """
    ``allocation_transaction`` for a new request on (consultant, phase).

    Locks the pair key, ``extra_keys`` and the key of the PENDING row the
    request may fold into, then yields that row (or None). If the pending row
    changed between the unlocked read and the lock, the keys are re-read.
    """
    for _ in range(_REQUEST_ATTEMPTS):
        peeked = pending_request(consultant_id, phase_id)
        peeked_id = peeked.id if peeked is not None else None
        keys = [pair_key(consultant_id, phase_id), *extra_keys]
        if peeked_id:
            keys.append(alloc_key(peeked_id))
        with allocation_transaction(*keys):
            pending = pending_request(consultant_id, phase_id, for_update=True)
            if (pending.id if pending is not None else None) == peeked_id:
                yield pending
                return
        logger.debug("Pending request for %s/%s changed before locking, retrying", consultant_id, phase_id)
    raise ApprovalConflictError(
        "Pending request for this consultant and phase is changing concurrently; retry",
        current_status=PhaseApprovalStatus.PENDING.value,
        event="request",
    )
