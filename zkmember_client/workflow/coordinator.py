"""Sequences membership checks, admission and proof submission for one device."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

from zkmember_client.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    JOIN_MESSAGE_COMMITMENT_DIGITS,
    JOIN_MESSAGE_PREFIX,
    JOIN_SCOPE_PREFIX,
    join_endpoint,
    modtrain_endpoint,
)
from zkmember_client.errors import ConfigurationError
from zkmember_client.ledger.events import ADMISSION_KINDS, EventKind
from zkmember_client.membership.group import Group
from zkmember_client.membership.mirror import MembershipMirror

from .correlator import EventCorrelator
from .proofs import Identity, ProofGenerator, SnapshotWitnessBuilder, WitnessBuilder
from .submission import ProofSubmissionClient, SubmissionResult
from .values import encode_update_message

logger = logging.getLogger(__name__)


class MembershipOracle(Protocol):
    async def has_member(self, group_id: str, commitment: int) -> bool:
        ...


class SubmissionPolicy(str, Enum):
    """What the coordinator does when a submission fails."""

    LOG_AND_CONTINUE = "log"
    RAISE = "raise"

    @classmethod
    def parse(cls, value: Any) -> "SubmissionPolicy":
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(policy.value for policy in cls)
            raise ConfigurationError(
                f"Invalid submission policy: {value!r}. Valid options: {valid}"
            ) from None


@dataclass
class WorkflowReport:
    group_id: str
    commitment: int
    joined: bool = False
    admission: Optional[SubmissionResult] = None
    members: List[str] = field(default_factory=list)
    join_proof: Optional[SubmissionResult] = None
    update_proof: Optional[SubmissionResult] = None

    @property
    def success(self) -> bool:
        results = [self.join_proof, self.update_proof]
        return all(result is not None and result.ok for result in results)


def join_scope(group_id: str) -> str:
    return f"{JOIN_SCOPE_PREFIX}{group_id}"


def join_message(commitment: int) -> str:
    return f"{JOIN_MESSAGE_PREFIX}{str(commitment)[:JOIN_MESSAGE_COMMITMENT_DIGITS]}"


class WorkflowCoordinator:
    """
    Drives one device through joining a group and proving updates.

    The ledger is the authority for membership; the mirror is read only
    after the confirming event has been observed. ``submission_policy`` has
    no default: callers choose between logging failed submissions and
    raising ``SubmissionError``. Witnesses come from ``witness_builder``,
    which defaults to handing the prover the ordered member snapshot.
    """

    def __init__(
        self,
        ledger: MembershipOracle,
        mirror: MembershipMirror,
        correlator: EventCorrelator,
        client: ProofSubmissionClient,
        prover: ProofGenerator,
        *,
        submission_policy: SubmissionPolicy,
        confirmation_timeout: Optional[float] = DEFAULT_CONFIRMATION_TIMEOUT,
        witness_builder: Optional[WitnessBuilder] = None,
    ) -> None:
        self._ledger = ledger
        self._mirror = mirror
        self._correlator = correlator
        self._client = client
        self._prover = prover
        self._policy = SubmissionPolicy.parse(submission_policy)
        self._confirmation_timeout = confirmation_timeout
        self._witness_builder = witness_builder or SnapshotWitnessBuilder()

    async def resolve_group_id(self, timeout: Optional[float] = None) -> str:
        """Return the first mirrored group, or wait for the next group creation."""
        known = self._mirror.group_ids()
        if known:
            logger.info("Group exists with id %s", known[0])
            return known[0]
        logger.info("Waiting for group creation...")
        event = await self._correlator.wait_for(
            None, None, {EventKind.GROUP_CREATED}, timeout=timeout
        )
        return event.group_id

    async def ensure_membership(
        self, group_id: str, commitment: int
    ) -> tuple[bool, Optional[SubmissionResult]]:
        """
        Make sure ``commitment`` is a member of ``group_id`` on chain.

        Returns (joined, admission_result); ``joined`` is False when the
        ledger already listed the commitment.
        """
        if await self._ledger.has_member(group_id, commitment):
            logger.info("Commitment already a member of group %s", group_id)
            return False, None

        # Register first so a fast confirmation cannot be missed.
        registration = self._correlator.register(group_id, commitment, ADMISSION_KINDS)
        try:
            admission = await self._client.request_admission(group_id, commitment)
            self._handle_result("add-member", admission)
            logger.info("Waiting for member event processing...")
            await registration.wait(self._confirmation_timeout)
        finally:
            registration.cancel()
        logger.info("Member added to group %s", group_id)
        return True, admission

    def load_group(self, group_id: str) -> Group:
        return Group(self._mirror.members(group_id))

    async def send_join_proof(
        self, group_id: str, group: Group, identity: Identity
    ) -> SubmissionResult:
        index = group.require_index(identity.commitment)
        scope = join_scope(group_id)
        message = join_message(identity.commitment)

        proof = await self._prover.generate(
            identity, self._witness_builder.build(group, index), message, scope
        )
        result = await self._client.submit(
            join_endpoint(group_id),
            {
                "commitment": str(identity.commitment),
                "proof": proof.to_payload(),
                "nullifier": proof.nullifier,
                "scope": scope,
            },
        )
        return self._handle_result("join proof", result)

    async def send_model_update_proof(
        self,
        group_id: str,
        group: Group,
        identity: Identity,
        scope: str,
        values: Iterable[Any],
    ) -> SubmissionResult:
        # Validation precedes any proving or network work.
        message = encode_update_message(values)
        index = group.require_index(identity.commitment)

        proof = await self._prover.generate(
            identity, self._witness_builder.build(group, index), message, scope
        )
        result = await self._client.submit(
            modtrain_endpoint(group_id),
            {
                "fullProof": proof.to_payload(),
                "nullifier": proof.nullifier,
                "message": list(message),
                "scope": scope,
            },
        )
        return self._handle_result("model update proof", result)

    async def run(
        self,
        group_id: str,
        identity: Identity,
        scope: str,
        values: Iterable[Any],
    ) -> WorkflowReport:
        values = list(values)
        encode_update_message(values)

        report = WorkflowReport(group_id=str(group_id), commitment=identity.commitment)
        report.joined, report.admission = await self.ensure_membership(
            group_id, identity.commitment
        )

        report.members = self._mirror.members(group_id)
        logger.info("Group %s has %d member(s)", group_id, len(report.members))
        group = Group(report.members)

        report.join_proof = await self.send_join_proof(group_id, group, identity)
        report.update_proof = await self.send_model_update_proof(
            group_id, group, identity, scope, values
        )
        return report

    def _handle_result(self, label: str, result: SubmissionResult) -> SubmissionResult:
        if result.ok:
            logger.info("%s sent and accepted", label.capitalize())
            return result
        if self._policy is SubmissionPolicy.RAISE:
            result.raise_for_error()
        logger.error("Error while sending %s: %s", label, result.error)
        return result


def summarize(report: WorkflowReport) -> Dict[str, Any]:
    def _result(result: Optional[SubmissionResult]) -> Optional[Dict[str, Any]]:
        if result is None:
            return None
        return {"ok": result.ok, "status_code": result.status_code, "error": result.error}

    return {
        "group_id": report.group_id,
        "joined": report.joined,
        "members": len(report.members),
        "admission": _result(report.admission),
        "join_proof": _result(report.join_proof),
        "update_proof": _result(report.update_proof),
        "success": report.success,
    }
