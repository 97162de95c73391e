from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping, Optional

from backend.app.models import utc_now
from backend.app.services.mailer import BatchInterruptedError
from backend.app.services.transports import TransportError
from backend.app.sessions import Session

if TYPE_CHECKING:
    from backend.app.observability import MetricsRegistry

logger = logging.getLogger("campaign_sender")

SEND_PROGRESS_SLOT = "campaign.email.send"


@dataclass
class ProgressState:
    sent_offset: int = 0
    total_pending: int = 0
    sent: int = 0
    failed: int = 0
    failed_recipients: dict[str, Any] = field(default_factory=dict)
    active: bool = False
    lease_acquired_at: Optional[datetime] = None

    def stats(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "failedRecipients": copy.deepcopy(self.failed_recipients),
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    success: bool
    percent: Optional[int] = None
    progress: Optional[tuple[int, int]] = None
    stats: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": 1 if self.success else 0}
        if self.percent is not None:
            data["percent"] = self.percent
        if self.progress is not None:
            data["progress"] = list(self.progress)
        if self.stats is not None:
            data["stats"] = self.stats
        if self.error is not None:
            data["error"] = self.error
        return data


class ProgressStore:
    def load(self, slot_key: str) -> Optional[ProgressState]:
        raise NotImplementedError

    def save(self, slot_key: str, state: ProgressState) -> None:
        raise NotImplementedError


class InMemoryProgressStore(ProgressStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._states: dict[str, ProgressState] = {}

    def load(self, slot_key: str) -> Optional[ProgressState]:
        with self._lock:
            state = self._states.get(slot_key)
            return _copy_state(state) if state else None

    def save(self, slot_key: str, state: ProgressState) -> None:
        with self._lock:
            self._states[slot_key] = _copy_state(state)


class SessionProgressStore(ProgressStore):
    """Keeps progress in the client's server-side session under one key per field."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def load(self, slot_key: str) -> Optional[ProgressState]:
        progress = self.session.get(f"{slot_key}.progress")
        if not isinstance(progress, list) or len(progress) != 2:
            return None
        stats = self.session.get(f"{slot_key}.stats") or {}
        active_since = self.session.get(f"{slot_key}.active_since")
        return ProgressState(
            sent_offset=int(progress[0]),
            total_pending=int(progress[1]),
            sent=int(stats.get("sent", 0)),
            failed=int(stats.get("failed", 0)),
            failed_recipients=dict(stats.get("failedRecipients") or {}),
            active=bool(self.session.get(f"{slot_key}.active", False)),
            lease_acquired_at=datetime.fromisoformat(active_since) if active_since else None,
        )

    def save(self, slot_key: str, state: ProgressState) -> None:
        self.session.set(f"{slot_key}.progress", [state.sent_offset, state.total_pending])
        self.session.set(f"{slot_key}.stats", state.stats())
        self.session.set(
            f"{slot_key}.active_since",
            state.lease_acquired_at.isoformat() if state.lease_acquired_at else None,
        )
        self.session.set(f"{slot_key}.active", state.active)


def _copy_state(state: ProgressState) -> ProgressState:
    return replace(state, failed_recipients=copy.deepcopy(state.failed_recipients))


def completion_percent(sent_offset: int, total_pending: int) -> int:
    if total_pending <= 0:
        return 100
    return -(-sent_offset * 100 // total_pending)


def merge_failed_recipients(target: dict[str, Any], failed_recipients: Mapping[str, Any]) -> None:
    """Fold a sender's failures into ``target``; a later value wins per address.

    Senders report either ``{item_id: {address: reason}}`` like
    ``EmailBatchSender`` or a flat ``{address: reason}``. Both land flat.
    """
    for key, value in (failed_recipients or {}).items():
        if isinstance(value, Mapping):
            target.update(value)
        else:
            target[key] = value


class BatchProgressTracker:
    """Advances one long-running list send by a bounded batch per client poll.

    The ``active`` lease is persisted before the batch sender runs and cleared
    on every exit path. A poll that finds a live lease does no work and
    reports the stored progress unchanged.

    A lease older than ``lease_ttl_seconds`` is reclaimed by the next poll. The
    holder that lost it still adds its batch counts to the stored state when
    it finishes, but leaves the newer lease in place.
    """

    def __init__(
        self,
        *,
        store: ProgressStore,
        lookup: Callable[[str], Any],
        sender: Any,
        default_batch_limit: int = 100,
        lease_ttl_seconds: int = 300,
        slot_key: str = SEND_PROGRESS_SLOT,
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional["MetricsRegistry"] = None,
    ) -> None:
        self.store = store
        self.lookup = lookup
        self.sender = sender
        self.default_batch_limit = max(1, default_batch_limit)
        self.lease_ttl_seconds = max(0, lease_ttl_seconds)
        self.slot_key = slot_key
        self.clock = clock
        self.metrics = metrics

    def poll(
        self,
        job_id: Optional[str],
        pending_hint: Optional[int],
        batch_limit: Optional[int] = None,
    ) -> ProgressSnapshot:
        job = self.lookup(job_id) if job_id else None
        if job is None:
            logger.info("send_batch_job_not_found job_id=%s", job_id)
            return ProgressSnapshot(success=False)

        pending = max(0, int(pending_hint or 0))
        limit = batch_limit if batch_limit and batch_limit > 0 else self.default_batch_limit
        state = self.store.load(self.slot_key) or ProgressState(total_pending=pending)

        error: Optional[str] = None
        remaining = state.total_pending - state.sent_offset
        if pending and remaining > 0 and job.is_enabled() and not self._lease_is_live(state):
            with self._lease(state) as batch:
                try:
                    sent, failed, failed_recipients = self.sender.send_batch(
                        job, None, min(limit, remaining)
                    )
                except BatchInterruptedError as exc:
                    self._accumulate(batch, exc.sent, exc.failed, exc.failed_recipients)
                    error = str(exc)
                except TransportError as exc:
                    error = str(exc)
                else:
                    self._accumulate(batch, sent, failed, failed_recipients)
            state = self.store.load(self.slot_key) or state

        if error is not None:
            logger.warning(
                "send_batch_failed job_id=%s offset=%s total=%s error=%s",
                job_id,
                state.sent_offset,
                state.total_pending,
                error,
            )
            return ProgressSnapshot(success=False, error=error)

        return ProgressSnapshot(
            success=True,
            percent=completion_percent(state.sent_offset, state.total_pending),
            progress=(state.sent_offset, state.total_pending),
            stats=state.stats(),
        )

    def _lease_is_live(self, state: ProgressState) -> bool:
        if not state.active:
            return False
        if not self.lease_ttl_seconds or state.lease_acquired_at is None:
            return True
        age = self.clock() - state.lease_acquired_at
        if age < timedelta(seconds=self.lease_ttl_seconds):
            return True
        logger.warning(
            "send_lease_reclaimed slot=%s acquired_at=%s age_seconds=%.0f",
            self.slot_key,
            state.lease_acquired_at.isoformat(),
            age.total_seconds(),
        )
        return False

    @contextmanager
    def _lease(self, state: ProgressState) -> Iterator[ProgressState]:
        """Hold the lease around the body, which accumulates into the yielded batch."""
        acquired_at = self.clock()
        state.active = True
        state.lease_acquired_at = acquired_at
        self.store.save(self.slot_key, state)
        logger.info(
            "send_lease_acquired slot=%s offset=%s total=%s",
            self.slot_key,
            state.sent_offset,
            state.total_pending,
        )
        batch = ProgressState()
        try:
            yield batch
        finally:
            self._release(state, batch, acquired_at)

    def _release(self, state: ProgressState, batch: ProgressState, acquired_at: datetime) -> None:
        current = self.store.load(self.slot_key) or state
        current.sent_offset += batch.sent_offset
        current.sent += batch.sent
        current.failed += batch.failed
        merge_failed_recipients(current.failed_recipients, batch.failed_recipients)
        if current.lease_acquired_at == acquired_at:
            current.active = False
            current.lease_acquired_at = None
        else:
            logger.warning(
                "send_lease_lost slot=%s acquired_at=%s sent=%s failed=%s",
                self.slot_key,
                acquired_at.isoformat(),
                batch.sent,
                batch.failed,
            )
        self.store.save(self.slot_key, current)

    def _accumulate(
        self,
        batch: ProgressState,
        sent: int,
        failed: int,
        failed_recipients: Mapping[str, Any],
    ) -> None:
        batch.sent_offset += sent + failed
        batch.sent += sent
        batch.failed += failed
        merge_failed_recipients(batch.failed_recipients, failed_recipients)
        if self.metrics:
            self.metrics.record_batch(sent=sent, failed=failed)
