"""Raw ledger events and their workflow-facing normalized form."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple


class ChainEventKind(str, Enum):
    GROUP_CREATED = "GroupCreated"
    MEMBER_ADDED = "MemberAdded"
    MEMBERS_ADDED = "MembersAdded"
    MEMBER_REMOVED = "MemberRemoved"
    MEMBER_UPDATED = "MemberUpdated"


class EventKind(str, Enum):
    GROUP_CREATED = "GroupCreated"
    MEMBER_ADDED_PROCESSED = "MemberAddedProcessed"
    MEMBER_REMOVED_PROCESSED = "MemberRemovedProcessed"
    MEMBER_UPDATED_PROCESSED = "MemberUpdatedProcessed"


CHAIN_EVENT_KINDS = tuple(ChainEventKind)

ADMISSION_KINDS = frozenset(
    {EventKind.MEMBER_ADDED_PROCESSED, EventKind.MEMBER_UPDATED_PROCESSED}
)


@dataclass(frozen=True, order=True)
class EventPosition:
    block_number: int
    log_index: int

    def __str__(self) -> str:
        return f"{self.block_number}:{self.log_index}"


@dataclass(frozen=True)
class RawChainEvent:
    kind: ChainEventKind
    group_id: str
    position: EventPosition
    tx_hash: str
    index: Optional[int] = None
    commitment: Optional[int] = None
    commitments: Tuple[int, ...] = ()
    new_commitment: Optional[int] = None

    @property
    def identity(self) -> Tuple[str, int]:
        return (self.tx_hash, self.position.log_index)

    @classmethod
    def from_args(
        cls,
        kind: ChainEventKind,
        args: Sequence[object],
        position: EventPosition,
        tx_hash: str,
    ) -> "RawChainEvent":
        """
        Build an event from positional contract arguments.

        Argument order follows the contract ABI:
            GroupCreated(groupId)
            MemberAdded(groupId, index, commitment)
            MembersAdded(groupId, startIndex, commitments[])
            MemberRemoved(groupId, index, commitment)
            MemberUpdated(groupId, index, oldCommitment, newCommitment)

        Trailing arguments (e.g. a Merkle root) are ignored.
        """
        kind = ChainEventKind(kind)
        minimum = {
            ChainEventKind.GROUP_CREATED: 1,
            ChainEventKind.MEMBER_ADDED: 3,
            ChainEventKind.MEMBERS_ADDED: 3,
            ChainEventKind.MEMBER_REMOVED: 3,
            ChainEventKind.MEMBER_UPDATED: 4,
        }[kind]
        if len(args) < minimum:
            raise ValueError(f"{kind.value} expects {minimum} arguments, got {len(args)}")

        group_id = str(args[0])
        if kind is ChainEventKind.GROUP_CREATED:
            return cls(kind, group_id, position, tx_hash)
        if kind is ChainEventKind.MEMBERS_ADDED:
            return cls(
                kind,
                group_id,
                position,
                tx_hash,
                index=int(args[1]),
                commitments=tuple(int(item) for item in args[2]),
            )
        if kind is ChainEventKind.MEMBER_UPDATED:
            return cls(
                kind,
                group_id,
                position,
                tx_hash,
                index=int(args[1]),
                commitment=int(args[2]),
                new_commitment=int(args[3]),
            )
        return cls(
            kind,
            group_id,
            position,
            tx_hash,
            index=int(args[1]),
            commitment=int(args[2]),
        )


@dataclass(frozen=True)
class NormalizedEvent:
    kind: EventKind
    group_id: str
    commitment: Optional[str] = None
    position: Optional[EventPosition] = None


def normalize(event: RawChainEvent) -> List[NormalizedEvent]:
    """Map a raw event onto the normalized events the workflow observes."""
    if event.kind is ChainEventKind.GROUP_CREATED:
        return [NormalizedEvent(EventKind.GROUP_CREATED, event.group_id, None, event.position)]
    if event.kind is ChainEventKind.MEMBER_ADDED:
        return [
            NormalizedEvent(
                EventKind.MEMBER_ADDED_PROCESSED,
                event.group_id,
                str(event.commitment),
                event.position,
            )
        ]
    if event.kind is ChainEventKind.MEMBERS_ADDED:
        return [
            NormalizedEvent(
                EventKind.MEMBER_ADDED_PROCESSED,
                event.group_id,
                str(commitment),
                event.position,
            )
            for commitment in event.commitments
        ]
    if event.kind is ChainEventKind.MEMBER_REMOVED:
        return [
            NormalizedEvent(
                EventKind.MEMBER_REMOVED_PROCESSED,
                event.group_id,
                str(event.commitment),
                event.position,
            )
        ]
    # Updates are keyed by the commitment now present in the group.
    return [
        NormalizedEvent(
            EventKind.MEMBER_UPDATED_PROCESSED,
            event.group_id,
            str(event.new_commitment),
            event.position,
        )
    ]
