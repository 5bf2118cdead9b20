"""Turns the contract event log into the local membership mirror."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Set, Tuple

import trio

from zkmember_client.constants import (
    DEFAULT_BACKFILL_BACKOFF,
    DEFAULT_BACKFILL_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
)
from zkmember_client.errors import ChainReadError, MirrorError
from zkmember_client.membership.mirror import MembershipMirror

from .events import ChainEventKind, EventPosition, NormalizedEvent, RawChainEvent, normalize
from .source import ChainSource

logger = logging.getLogger(__name__)

MAX_LIVE_BACKOFF = 30.0


def apply_event(mirror: MembershipMirror, event: RawChainEvent) -> None:
    group_id = event.group_id
    if event.kind is ChainEventKind.GROUP_CREATED:
        mirror.ensure_group(group_id)
    elif event.kind is ChainEventKind.MEMBER_ADDED:
        mirror.add_member(group_id, str(event.commitment))
    elif event.kind is ChainEventKind.MEMBERS_ADDED:
        for commitment in event.commitments:
            mirror.add_member(group_id, str(commitment))
    elif event.kind is ChainEventKind.MEMBER_REMOVED:
        mirror.remove_member(group_id, str(event.commitment))
    elif event.kind is ChainEventKind.MEMBER_UPDATED:
        mirror.update_member(group_id, str(event.commitment), str(event.new_commitment))


class ContractEventBridge:
    """
    Replays historical contract events, then follows new blocks.

    Events are applied in global (block, log index) order across all
    kinds. A single watermark records the last applied position; anything
    at or below it is a replay and is skipped, so overlapping reads of the
    backfill and live ranges never apply an event twice.

    The mirror is persisted once per applied batch, together with the
    batch's last position, before the batch's normalized events are
    published. A batch whose save fails is rolled back and read again on
    the next poll. On restart the saved position becomes the watermark, so
    no event is folded into the mirror twice.
    """

    def __init__(
        self,
        source: ChainSource,
        mirror: MembershipMirror,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_BACKFILL_MAX_ATTEMPTS,
        backoff: float = DEFAULT_BACKFILL_BACKOFF,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._source = source
        self._mirror = mirror
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._watermark: Optional[EventPosition] = None
        self._synced_block: Optional[int] = None
        self._subscribers: List[trio.MemorySendChannel] = []
        self._closed = False

    @property
    def watermark(self) -> Optional[EventPosition]:
        return self._watermark

    @property
    def synced_block(self) -> Optional[int]:
        return self._synced_block

    def subscribe(self, max_buffer: float = 100) -> trio.MemoryReceiveChannel:
        """
        Open a channel of normalized events.

        Close the returned receive channel to unsubscribe. Every channel is
        closed when ``run`` exits.
        """
        if self._closed:
            raise RuntimeError("bridge has stopped")
        send_channel, receive_channel = trio.open_memory_channel(max_buffer)
        self._subscribers.append(send_channel)
        return receive_channel

    async def run(
        self, from_block: int = 0, *, task_status=trio.TASK_STATUS_IGNORED
    ) -> None:
        """Backfill from ``from_block``, report started, then follow new blocks."""
        try:
            self._mirror.load()
            from_block = self._resume_point(from_block)
            await self.backfill(from_block)
            task_status.started(self._synced_block)
            await self.listen()
        finally:
            self.close()

    def _resume_point(self, from_block: int) -> int:
        """
        Pick the first block to read after loading the mirror.

        With a saved position, reading resumes at that block (or at
        ``from_block`` if later) and the position becomes the watermark. A
        mirror without a position cannot be matched against the log: a
        replay from block 0 rebuilds it from scratch, while a later
        ``from_block`` trusts it to cover the blocks before.
        """
        saved = self._mirror.position
        if saved is None:
            if from_block == 0 and self._mirror.group_ids():
                logger.warning(
                    "Mirror %s has no sync position, rebuilding from block 0", self._mirror.path
                )
                self._mirror.reset()
                self._mirror.save()
            return from_block
        self._watermark = EventPosition(*saved)
        start = max(from_block, self._watermark.block_number)
        logger.info("Resuming at block %d after %s", start, self._watermark)
        return start

    def close(self) -> None:
        self._closed = True
        for channel in self._subscribers:
            channel.close()
        self._subscribers.clear()

    async def backfill(self, from_block: int = 0) -> int:
        """
        Apply every event from ``from_block`` up to the current head.

        Read failures are retried with exponential backoff; when attempts
        are exhausted the last ``ChainReadError`` propagates. A mirror that
        cannot be written raises ``MirrorError``.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                head = await self._source.head()
                events = await self._source.fetch_events(from_block, head)
                break
            except ChainReadError as exc:
                if attempt >= self._max_attempts:
                    logger.error("Backfill failed after %d attempt(s): %s", attempt, exc)
                    raise
                delay = self._backoff * 2 ** (attempt - 1)
                logger.warning(
                    "Backfill read failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt,
                    self._max_attempts,
                    delay,
                    exc,
                )
                await trio.sleep(delay)

        applied = await self._apply_batch(events)
        self._synced_block = max(head, from_block - 1)
        logger.info(
            "Backfill complete: %d event(s) applied through block %d",
            applied,
            self._synced_block,
        )
        return self._synced_block

    async def listen(self) -> None:
        """
        Poll for new blocks until cancelled.

        Ledger read failures and mirror write failures never end the loop;
        the failed range is read again after a backoff.
        """
        failures = 0
        while True:
            await trio.sleep(self._poll_interval)
            try:
                await self.poll_once()
            except (ChainReadError, MirrorError) as exc:
                failures += 1
                delay = min(MAX_LIVE_BACKOFF, self._backoff * 2 ** (failures - 1))
                logger.warning("Live update failed, retrying in %.1fs: %s", delay, exc)
                await trio.sleep(delay)
            else:
                failures = 0

    async def poll_once(self) -> int:
        """Apply events from the blocks after the last synced block."""
        head = await self._source.head()
        start = 0 if self._synced_block is None else self._synced_block + 1
        if head < start:
            return 0
        events = await self._source.fetch_events(start, head)
        applied = await self._apply_batch(events)
        self._synced_block = head
        return applied

    async def _apply_batch(self, events: Iterable[RawChainEvent]) -> int:
        ordered = self._select_new(events)
        if not ordered:
            return 0
        members_before = self._mirror.snapshot()
        position_before = self._mirror.position

        published: List[NormalizedEvent] = []
        for event in ordered:
            logger.info(
                "%s: groupId=%s position=%s", event.kind.value, event.group_id, event.position
            )
            apply_event(self._mirror, event)
            published.extend(normalize(event))
        last = ordered[-1].position
        self._mirror.set_position(last.block_number, last.log_index)
        try:
            self._mirror.save()
        except MirrorError:
            # Nothing in the batch counts as applied until it is on disk.
            self._mirror.reset(members_before, position_before)
            raise
        self._watermark = last
        for normalized in published:
            await self._publish(normalized)
        return len(ordered)

    def _select_new(self, events: Iterable[RawChainEvent]) -> List[RawChainEvent]:
        seen: Set[Tuple[str, int]] = set()
        selected: List[RawChainEvent] = []
        for event in sorted(events, key=lambda item: item.position):
            if self._watermark is not None and event.position <= self._watermark:
                logger.debug("Skipping replayed event at %s", event.position)
                continue
            if event.identity in seen:
                continue
            seen.add(event.identity)
            selected.append(event)
        return selected

    async def _publish(self, event: NormalizedEvent) -> None:
        for channel in list(self._subscribers):
            try:
                await channel.send(event)
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                self._subscribers.remove(channel)
                logger.debug("Dropped closed subscriber")
