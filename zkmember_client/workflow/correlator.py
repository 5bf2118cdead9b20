"""Lets workflow steps wait for a specific membership change."""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

import trio

from zkmember_client.errors import AwaitTimeoutError, DuplicateRegistrationError
from zkmember_client.ledger.events import EventKind, NormalizedEvent

logger = logging.getLogger(__name__)

WaitKey = Tuple[Optional[str], Optional[str], FrozenSet[EventKind]]


def make_key(
    group_id: Optional[str], commitment: Optional[object], kinds: Iterable[EventKind]
) -> WaitKey:
    kind_set = frozenset(EventKind(kind) for kind in kinds)
    if not kind_set:
        raise ValueError("at least one event kind is required")
    return (
        None if group_id is None else str(group_id),
        None if commitment is None else str(commitment),
        kind_set,
    )


class _PendingWait:
    def __init__(self, key: WaitKey) -> None:
        self.key = key
        self.done = trio.Event()
        self.result: Optional[NormalizedEvent] = None
        self.waiters = 0

    def matches(self, event: NormalizedEvent) -> bool:
        group_id, commitment, kinds = self.key
        if event.kind not in kinds:
            return False
        if group_id is not None and event.group_id != group_id:
            return False
        if commitment is not None and event.commitment != commitment:
            return False
        return True


class WaitRegistration:
    """Handle for one waiter on a pending key."""

    def __init__(self, correlator: "EventCorrelator", pending: _PendingWait) -> None:
        self._correlator = correlator
        self._pending = pending
        self._active = True
        pending.waiters += 1

    @property
    def key(self) -> WaitKey:
        return self._pending.key

    @property
    def resolved(self) -> bool:
        return self._pending.done.is_set()

    async def wait(self, timeout: Optional[float] = None) -> NormalizedEvent:
        """
        Block until the matching event arrives.

        Raises:
            AwaitTimeoutError: if ``timeout`` seconds pass first; the
                registration is released
        """
        try:
            if timeout is None:
                await self._pending.done.wait()
            else:
                with trio.fail_after(timeout):
                    await self._pending.done.wait()
        except trio.TooSlowError:
            self.cancel()
            group_id, commitment, kinds = self.key
            raise AwaitTimeoutError(
                f"no {sorted(kind.value for kind in kinds)} event for "
                f"group={group_id} commitment={commitment} within {timeout}s"
            ) from None
        except BaseException:
            self.cancel()
            raise
        self._active = False
        return self._pending.result  # type: ignore[return-value]

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._correlator._release(self._pending)


class EventCorrelator:
    """
    Registry of pending waits keyed by (group, commitment, kinds).

    Each key resolves once, on the first normalized event matching it, and
    is then removed. A second registration for a pending key joins the same
    wait when ``fan_out`` is enabled and is rejected otherwise. A ``None``
    group or commitment matches any value; exact keys match exactly.
    """

    def __init__(self, *, fan_out: bool = True) -> None:
        self._fan_out = fan_out
        self._pending: Dict[WaitKey, _PendingWait] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(
        self, group_id: Optional[str], commitment: Optional[object], kinds: Iterable[EventKind]
    ) -> bool:
        return make_key(group_id, commitment, kinds) in self._pending

    def register(
        self,
        group_id: Optional[str],
        commitment: Optional[object],
        kinds: Iterable[EventKind],
    ) -> WaitRegistration:
        key = make_key(group_id, commitment, kinds)
        pending = self._pending.get(key)
        if pending is None:
            pending = _PendingWait(key)
            self._pending[key] = pending
            logger.debug("Registered wait for %s", key)
        elif not self._fan_out:
            raise DuplicateRegistrationError(f"a wait for {key} is already pending")
        return WaitRegistration(self, pending)

    async def wait_for(
        self,
        group_id: Optional[str],
        commitment: Optional[object],
        kinds: Iterable[EventKind],
        *,
        timeout: Optional[float] = None,
    ) -> NormalizedEvent:
        registration = self.register(group_id, commitment, kinds)
        return await registration.wait(timeout)

    def dispatch(self, event: NormalizedEvent) -> int:
        """Resolve every pending key the event matches; return how many resolved."""
        resolved = 0
        for key, pending in list(self._pending.items()):
            if pending.matches(event):
                del self._pending[key]
                pending.result = event
                pending.done.set()
                resolved += 1
        if resolved:
            logger.debug("%s for group=%s resolved %d wait(s)", event.kind.value, event.group_id, resolved)
        return resolved

    async def run(self, channel: trio.MemoryReceiveChannel) -> None:
        """Dispatch events from a bridge subscription until it closes."""
        async with channel:
            async for event in channel:
                self.dispatch(event)

    def _release(self, pending: _PendingWait) -> None:
        pending.waiters -= 1
        if pending.waiters <= 0 and self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
            logger.debug("Released wait for %s", pending.key)
