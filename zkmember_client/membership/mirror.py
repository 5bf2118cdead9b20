"""Durable local copy of on-chain group membership.

The mirror has a single writer: the contract event bridge. Readers (the
workflow coordinator, the CLI) only take snapshots. No lock guards the
in-memory mapping; introducing a second writer requires one.

File layout::

    {
      "groups": {"<groupId>": ["<commitment>", ...]},
      "position": {"blockNumber": 12, "logIndex": 0}
    }

``position`` is the last ledger event folded into ``groups``. It is written
in the same file, so the two never disagree after a crash. Files holding a
bare ``{"<groupId>": [...]}`` mapping still load, with no position.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from zkmember_client.errors import MirrorError

logger = logging.getLogger(__name__)

Members = Dict[str, List[str]]
Position = Tuple[int, int]


def _discard(tmp_name: str) -> None:
    try:
        os.unlink(tmp_name)
    except FileNotFoundError:
        pass


class MembershipMirror:
    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._members: Members = {}
        self._position: Optional[Position] = None
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def position(self) -> Optional[Position]:
        """(block number, log index) of the last applied event, if known."""
        return self._position

    def load(self) -> Members:
        """Reload the mapping from disk and return a copy of it."""
        if not self._path.exists():
            self._members = {}
            self._position = None
            self._dirty = False
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise MirrorError(f"cannot read mirror {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise MirrorError(f"mirror {self._path} must hold a JSON object")

        if isinstance(raw.get("groups"), dict):
            groups = raw["groups"]
            position = self._parse_position(raw.get("position"))
        else:
            groups, position = raw, None

        members: Members = {}
        for group_id, commitments in groups.items():
            if not isinstance(commitments, list):
                raise MirrorError(f"group {group_id!r} must map to a list")
            ordered: List[str] = []
            for commitment in commitments:
                value = str(commitment)
                if value not in ordered:
                    ordered.append(value)
            members[str(group_id)] = ordered
        self._members = members
        self._position = position
        self._dirty = False
        logger.debug(
            "Loaded %d group(s) from %s (position %s)", len(members), self._path, position
        )
        return self.snapshot()

    def _parse_position(self, value: Any) -> Optional[Position]:
        if value is None:
            return None
        try:
            return (int(value["blockNumber"]), int(value["logIndex"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise MirrorError(f"mirror {self._path} has a malformed position: {value!r}") from exc

    def save(self, members: Optional[Mapping[str, List[str]]] = None) -> None:
        """
        Persist the mapping and position as a single unit.

        The complete content is written to a temporary file in the target
        directory and then moved over the previous file, so readers see
        either the old or the new content and never a partial write.

        Raises:
            MirrorError: if the file cannot be written; the previous file
                is left in place
        """
        if members is not None:
            self._members = {str(k): [str(c) for c in v] for k, v in members.items()}
        document: Dict[str, Any] = {"groups": self._members, "position": None}
        if self._position is not None:
            block_number, log_index = self._position
            document["position"] = {"blockNumber": block_number, "logIndex": log_index}
        payload = json.dumps(document, indent=2)

        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            _discard(tmp_name)
            raise MirrorError(f"cannot write mirror {self._path}: {exc}") from exc
        except BaseException:
            _discard(tmp_name)
            raise
        self._dirty = False

    def reset(
        self, members: Optional[Mapping[str, List[str]]] = None, position: Optional[Position] = None
    ) -> None:
        """Replace the in-memory state without touching the file."""
        self._members = {str(k): [str(c) for c in v] for k, v in (members or {}).items()}
        self._position = position
        self._dirty = True

    def set_position(self, block_number: int, log_index: int) -> None:
        position = (int(block_number), int(log_index))
        if position != self._position:
            self._position = position
            self._dirty = True

    def snapshot(self) -> Members:
        return {group_id: list(commitments) for group_id, commitments in self._members.items()}

    def members(self, group_id: str) -> List[str]:
        return list(self._members.get(str(group_id), []))

    def group_ids(self) -> List[str]:
        return list(self._members)

    def has_member(self, group_id: str, commitment: str) -> bool:
        return str(commitment) in self._members.get(str(group_id), [])

    def ensure_group(self, group_id: str) -> bool:
        group_id = str(group_id)
        if group_id in self._members:
            return False
        self._members[group_id] = []
        self._dirty = True
        return True

    def add_member(self, group_id: str, commitment: str) -> bool:
        group = self._members.setdefault(str(group_id), [])
        commitment = str(commitment)
        if commitment in group:
            return False
        group.append(commitment)
        self._dirty = True
        return True

    def remove_member(self, group_id: str, commitment: str) -> bool:
        group = self._members.get(str(group_id))
        commitment = str(commitment)
        if not group or commitment not in group:
            return False
        group.remove(commitment)
        self._dirty = True
        return True

    def update_member(self, group_id: str, old: str, new: str) -> bool:
        """Replace ``old`` with ``new`` in place; add ``new`` if ``old`` is absent."""
        group = self._members.setdefault(str(group_id), [])
        old, new = str(old), str(new)
        if old not in group:
            return self.add_member(group_id, new)
        if old == new:
            return False
        position = group.index(old)
        if new in group:
            # Keep commitments unique within a group.
            group.pop(position)
        else:
            group[position] = new
        self._dirty = True
        return True
