"""
Collaborators that turn a group snapshot into a proof.

Both the membership witness and the proof come from outside this package:
a ``WitnessBuilder`` describes a member's position in a group snapshot in
whatever form the prover expects, and a ``ProofGenerator`` proves over it.
"""

from __future__ import annotations

import json
import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Union

import trio

from zkmember_client.constants import DEFAULT_PROVER_TIMEOUT
from zkmember_client.errors import ProofGenerationError
from zkmember_client.membership.group import Group

logger = logging.getLogger(__name__)

Message = Union[bytes, str]


@dataclass(frozen=True)
class Identity:
    secret: str = field(repr=False)
    commitment: int


@dataclass(frozen=True)
class MembershipWitness:
    """Inclusion data for one member; ``data`` is opaque to this package."""

    index: int
    commitment: int
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "commitment": str(self.commitment), **self.data}


class WitnessBuilder(Protocol):
    def build(self, group: Group, index: int) -> MembershipWitness:
        ...


class SnapshotWitnessBuilder:
    """
    Hands the prover the ordered member list.

    Provers that rebuild the group tree themselves (e.g. from every
    commitment in insertion order) need nothing more than the snapshot and
    the member's index.
    """

    def build(self, group: Group, index: int) -> MembershipWitness:
        commitment = group.member_at(index)
        return MembershipWitness(
            index=index,
            commitment=commitment,
            data={"members": [str(member) for member in group.members], "size": group.size},
        )


@dataclass(frozen=True)
class Proof:
    merkle_tree_depth: int
    merkle_tree_root: str
    nullifier: str
    message: str
    scope: str
    points: List[str]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "merkleTreeDepth": self.merkle_tree_depth,
            "merkleTreeRoot": self.merkle_tree_root,
            "nullifier": self.nullifier,
            "message": self.message,
            "scope": self.scope,
            "points": list(self.points),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Proof":
        try:
            return cls(
                merkle_tree_depth=int(payload["merkleTreeDepth"]),
                merkle_tree_root=str(payload["merkleTreeRoot"]),
                nullifier=str(payload["nullifier"]),
                message=str(payload["message"]),
                scope=str(payload["scope"]),
                points=[str(point) for point in payload.get("points", [])],
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProofGenerationError(f"malformed proof: {exc}") from exc


class ProofGenerator(Protocol):
    async def generate(
        self,
        identity: Identity,
        witness: MembershipWitness,
        message: Message,
        scope: str,
    ) -> Proof:
        ...


def build_prover_request(
    identity: Identity, witness: MembershipWitness, message: Message, scope: str
) -> Dict[str, Any]:
    if isinstance(message, (bytes, bytearray)):
        encoded_message: Any = {"encoding": "bytes", "data": list(message)}
    else:
        encoded_message = {"encoding": "utf-8", "data": message}
    return {
        "identity": {"secret": identity.secret, "commitment": str(identity.commitment)},
        "witness": witness.to_dict(),
        "message": encoded_message,
        "scope": scope,
    }


class SubprocessProofGenerator:
    """
    Runs an external prover command.

    The command receives a JSON request on stdin and must print a JSON
    proof on stdout, e.g. ``{"merkleTreeDepth": 16, "nullifier": "..."}``.
    """

    def __init__(
        self, command: Union[str, Sequence[str]], *, timeout: float = DEFAULT_PROVER_TIMEOUT
    ) -> None:
        parts = shlex.split(command) if isinstance(command, str) else list(command)
        if not parts:
            raise ValueError("prover command is empty")
        self._command = parts
        self._timeout = timeout

    @property
    def command(self) -> List[str]:
        return list(self._command)

    async def generate(
        self,
        identity: Identity,
        witness: MembershipWitness,
        message: Message,
        scope: str,
    ) -> Proof:
        request = json.dumps(build_prover_request(identity, witness, message, scope))
        try:
            with trio.fail_after(self._timeout):
                result = await trio.run_process(
                    self._command,
                    stdin=request.encode("utf-8"),
                    capture_stdout=True,
                    capture_stderr=True,
                    check=False,
                )
        except trio.TooSlowError:
            raise ProofGenerationError(f"prover timed out after {self._timeout}s") from None
        except OSError as exc:
            raise ProofGenerationError(f"cannot start prover: {exc}") from exc

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", "replace").strip() or "unknown prover error"
            raise ProofGenerationError(f"prover failed: {stderr}")
        try:
            payload = json.loads(result.stdout.decode("utf-8"))
        except ValueError as exc:
            raise ProofGenerationError(f"prover returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ProofGenerationError("prover output must be a JSON object")
        logger.debug("Prover produced proof for scope %s", scope)
        return Proof.from_payload(payload)
