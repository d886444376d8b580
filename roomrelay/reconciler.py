"""Client-side delivery reconciliation for outgoing envelopes."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Union

from .constants import R_RETRY_LIMIT, RETRY_MAX
from .envelope import ChatAck, Envelope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pending:
    """Awaiting acknowledgment; ``attempts`` counts resubmissions so far."""

    attempts: int = 0


@dataclass(frozen=True)
class Sent:
    """Relay acknowledged the envelope."""


@dataclass(frozen=True)
class Failed:
    """Relay rejected the envelope, or the client gave up for a non-transient reason."""

    reason: str


@dataclass(frozen=True)
class RetryExhausted:
    """Resubmitted too many times without an acknowledgment."""

    reason: str = R_RETRY_LIMIT


DeliveryState = Union[Pending, Sent, Failed, RetryExhausted]


@dataclass
class PendingSend:
    """One envelope awaiting acknowledgment."""

    envelope: Envelope
    attempts: int = 0

    @property
    def room(self) -> str:
        return self.envelope.room


class DeliveryReconciler:
    """Tracks outgoing envelopes from submit to a terminal delivery state.

    Acknowledged-failed envelopes are never retried: a validation or
    authorization rejection will not change on resubmission. Retries only
    happen through ``next_attempt``, driven by reconnection replay or an
    acknowledgment timeout, and stop after ``retry_max`` resubmissions.

    Also keeps the receive-side record of rendered envelope IDs, independent
    of the relay's cache, so rendering stays idempotent per ID.

    Not thread-safe: meant to be driven from a single event loop.
    """

    def __init__(
        self,
        retry_max: int = RETRY_MAX,
        on_change: Callable[[str, DeliveryState], None] | None = None,
    ):
        """Initialize the reconciler.

        Args:
            retry_max: Resubmissions allowed before giving up
            on_change: Called with (envelope id, new state) on every transition
        """
        self.retry_max = retry_max
        self.on_change = on_change

        self._pending: dict[str, PendingSend] = {}
        self._states: dict[str, DeliveryState] = {}
        self._local_ids: set[str] = set()
        self._rendered_ids: set[str] = set()

    def _transition(self, mid: str, state: DeliveryState) -> None:
        self._states[mid] = state
        if self.on_change:
            try:
                self.on_change(mid, state)
            except Exception as e:
                logger.exception("Error in on_change callback: %s", e)

    def submit(self, envelope: Envelope) -> PendingSend:
        """Start tracking a freshly created envelope.

        Raises:
            ValueError: If the envelope ID is already tracked
        """
        if envelope.id in self._states:
            raise ValueError(f"envelope {envelope.id} already submitted")
        entry = PendingSend(envelope)
        self._pending[envelope.id] = entry
        self._local_ids.add(envelope.id)
        self._transition(envelope.id, Pending(0))
        return entry

    def acknowledge(self, ack: ChatAck) -> DeliveryState | None:
        """Apply a relay acknowledgment.

        Returns:
            New terminal state, or None if the ID was not pending
        """
        if self._pending.pop(ack.id, None) is None:
            logger.debug("Ignoring ack for unknown or settled id=%s", ack.id)
            return None

        state: DeliveryState = Sent() if ack.ok else Failed(ack.reason or "rejected")
        self._transition(ack.id, state)
        return state

    def next_attempt(self, mid: str) -> bool:
        """Count a resubmission.

        Returns:
            True if the envelope should be resent, False if it is not pending
            or has just exhausted its retries
        """
        entry = self._pending.get(mid)
        if entry is None:
            return False

        entry.attempts += 1
        if entry.attempts > self.retry_max:
            del self._pending[mid]
            logger.info("Giving up on id=%s after %d attempts", mid, entry.attempts - 1)
            self._transition(mid, RetryExhausted())
            return False

        self._transition(mid, Pending(entry.attempts))
        return True

    def fail(self, mid: str, reason: str) -> bool:
        """Mark a pending envelope permanently failed. Returns False if not pending."""
        if self._pending.pop(mid, None) is None:
            return False
        self._transition(mid, Failed(reason))
        return True

    def state(self, mid: str) -> DeliveryState | None:
        return self._states.get(mid)

    def get(self, mid: str) -> PendingSend | None:
        return self._pending.get(mid)

    def is_pending(self, mid: str) -> bool:
        return mid in self._pending

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def pending_by_room(self) -> dict[str, list[Envelope]]:
        """Group pending envelopes by room, in submission order."""
        by_room: dict[str, list[Envelope]] = {}
        for entry in self._pending.values():
            by_room.setdefault(entry.room, []).append(entry.envelope)
        return by_room

    def is_local(self, mid: str) -> bool:
        return mid in self._local_ids

    def receive(self, envelope: Envelope) -> bool:
        """Record an inbound envelope for rendering.

        Returns:
            True the first time an ID is seen, False for every repeat
        """
        if envelope.id in self._rendered_ids:
            return False
        self._rendered_ids.add(envelope.id)
        return True
