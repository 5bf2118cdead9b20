"""Ordered group snapshot built from the mirror."""

from __future__ import annotations

from typing import Any, Iterable, List

from zkmember_client.errors import CommitmentNotFoundError


class Group:
    """
    Commitments of one group in chain order.

    Position in the list is the member index the contract assigned, which
    is what a membership witness refers to.
    """

    def __init__(self, members: Iterable[Any] = ()) -> None:
        self._members: List[int] = [int(member) for member in members]

    @property
    def members(self) -> List[int]:
        return list(self._members)

    @property
    def size(self) -> int:
        return len(self._members)

    def index_of(self, commitment: Any) -> int:
        try:
            return self._members.index(int(commitment))
        except ValueError:
            return -1

    def require_index(self, commitment: Any) -> int:
        index = self.index_of(commitment)
        if index == -1:
            raise CommitmentNotFoundError(f"Commitment {commitment} not found in the group")
        return index

    def member_at(self, index: int) -> int:
        if index < 0 or index >= len(self._members):
            raise IndexError(f"member index {index} out of range for group of {self.size}")
        return self._members[index]
