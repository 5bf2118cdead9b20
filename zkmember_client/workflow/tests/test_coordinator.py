"""Unit tests for the workflow coordinator."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, List, Optional

import httpx
import pytest

from zkmember_client.errors import (
    AwaitTimeoutError,
    CommitmentNotFoundError,
    ConfigurationError,
    SubmissionError,
    UnsupportedValueError,
)
from zkmember_client.ledger.events import EventKind, NormalizedEvent
from zkmember_client.membership.group import Group
from zkmember_client.membership.mirror import MembershipMirror
from zkmember_client.workflow.coordinator import (
    SubmissionPolicy,
    WorkflowCoordinator,
    join_message,
    join_scope,
    summarize,
)
from zkmember_client.workflow.correlator import EventCorrelator
from zkmember_client.workflow.proofs import Identity, MembershipWitness, Proof
from zkmember_client.workflow.submission import ProofSubmissionClient

COMMITMENT = 123456789012345
IDENTITY = Identity(secret="secret", commitment=COMMITMENT)


class _Ledger:
    def __init__(self, members=()) -> None:
        self.members = set(members)
        self.calls = 0

    async def has_member(self, group_id: str, commitment: int) -> bool:
        self.calls += 1
        return (group_id, commitment) in self.members


class _Prover:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    async def generate(self, identity, witness: MembershipWitness, message, scope) -> Proof:
        assert witness.commitment == identity.commitment
        self.calls.append((identity.commitment, witness.index, message, scope))
        return Proof(
            merkle_tree_depth=witness.data["size"],
            merkle_tree_root=",".join(witness.data["members"]),
            nullifier=f"null-{scope}",
            message=message if isinstance(message, str) else message.decode("utf-8"),
            scope=scope,
            points=["0"] * 8,
        )


class _Harness:
    def __init__(
        self,
        tmp_path: Path,
        *,
        ledger_members=(),
        mirrored=(),
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        policy: SubmissionPolicy = SubmissionPolicy.LOG_AND_CONTINUE,
        confirmation_timeout: float = 5,
        witness_builder=None,
    ) -> None:
        self.requests: List[httpx.Request] = []
        self.handler = handler or (lambda request: httpx.Response(200, json={"valid": True}))
        self.ledger = _Ledger(ledger_members)
        self.mirror = MembershipMirror(tmp_path / "members.json")
        self.mirror.ensure_group("7")
        for commitment in mirrored:
            self.mirror.add_member("7", commitment)
        self.correlator = EventCorrelator()
        self.prover = _Prover()
        self.client = ProofSubmissionClient(
            "http://verifier.test", transport=httpx.MockTransport(self._record)
        )
        self.coordinator = WorkflowCoordinator(
            self.ledger,
            self.mirror,
            self.correlator,
            self.client,
            self.prover,
            submission_policy=policy,
            confirmation_timeout=confirmation_timeout,
            witness_builder=witness_builder,
        )

    def _record(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]

    def body(self, path: str) -> dict:
        for request in self.requests:
            if request.url.path == path:
                return json.loads(request.content)
        raise KeyError(path)


def _confirming_handler(harness_ref: List[_Harness]) -> Callable[[httpx.Request], httpx.Response]:
    """Admission endpoint that lands the member on chain before replying."""

    def _handle(request: httpx.Request) -> httpx.Response:
        harness = harness_ref[0]
        if request.url.path == "/add-member":
            body = json.loads(request.content)
            harness.mirror.add_member(body["groupId"], body["identityCommitment"])
            harness.correlator.dispatch(
                NormalizedEvent(
                    EventKind.MEMBER_ADDED_PROCESSED, body["groupId"], body["identityCommitment"]
                )
            )
        return httpx.Response(200, json={"valid": True})

    return _handle


def test_join_scope_and_message() -> None:
    assert join_scope("7") == "join-7"
    assert join_message(COMMITMENT) == "join-12345678"
    assert join_message(42) == "join-42"


def test_policy_is_required_and_validated(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    with pytest.raises(TypeError):
        WorkflowCoordinator(  # type: ignore[call-arg]
            harness.ledger, harness.mirror, harness.correlator, harness.client, harness.prover
        )
    with pytest.raises(ConfigurationError, match="Invalid submission policy"):
        SubmissionPolicy.parse("ignore")
    assert SubmissionPolicy.parse("raise") is SubmissionPolicy.RAISE


@pytest.mark.trio
async def test_existing_member_skips_admission(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, ledger_members=[("7", COMMITMENT)])

    joined, admission = await harness.coordinator.ensure_membership("7", COMMITMENT)

    assert (joined, admission) == (False, None)
    assert harness.requests == []
    assert harness.correlator.pending_count == 0


@pytest.mark.trio
async def test_admission_waits_for_confirming_event(tmp_path: Path) -> None:
    ref: List[_Harness] = []
    harness = _Harness(tmp_path, handler=_confirming_handler(ref))
    ref.append(harness)

    joined, admission = await harness.coordinator.ensure_membership("7", COMMITMENT)

    assert joined is True
    assert admission.ok is True
    assert harness.body("/add-member") == {"groupId": "7", "identityCommitment": str(COMMITMENT)}
    assert harness.correlator.pending_count == 0


@pytest.mark.trio
async def test_admission_times_out_without_event(tmp_path: Path, autojump_clock) -> None:
    harness = _Harness(tmp_path, confirmation_timeout=30)

    with pytest.raises(AwaitTimeoutError):
        await harness.coordinator.ensure_membership("7", COMMITMENT)

    assert harness.paths() == ["/add-member"]
    assert harness.correlator.pending_count == 0


@pytest.mark.trio
async def test_join_proof_payload(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, mirrored=["5", str(COMMITMENT), "6"])
    group = harness.coordinator.load_group("7")

    result = await harness.coordinator.send_join_proof("7", group, IDENTITY)

    assert result.ok is True
    assert harness.prover.calls == [(COMMITMENT, 1, "join-12345678", "join-7")]
    body = harness.body("/group/7/join-proof")
    assert body["commitment"] == str(COMMITMENT)
    assert body["nullifier"] == "null-join-7"
    assert body["scope"] == "join-7"
    assert body["proof"]["merkleTreeRoot"] == f"5,{COMMITMENT},6"
    assert body["proof"]["merkleTreeDepth"] == 3


@pytest.mark.trio
async def test_model_update_payload(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, mirrored=[str(COMMITMENT)])
    group = harness.coordinator.load_group("7")

    await harness.coordinator.send_model_update_proof("7", group, IDENTITY, "round-1", [1, "2", 3.0])

    message = b'["1","2","3"]'
    assert harness.prover.calls == [(COMMITMENT, 0, message, "round-1")]
    body = harness.body("/group/7/modtrain-proof")
    assert body["message"] == list(message)
    assert body["scope"] == "round-1"
    assert body["fullProof"]["nullifier"] == body["nullifier"]


@pytest.mark.trio
async def test_missing_commitment_fails_before_proving(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, mirrored=["1", "2"])

    with pytest.raises(CommitmentNotFoundError):
        await harness.coordinator.send_join_proof("7", harness.coordinator.load_group("7"), IDENTITY)

    assert harness.prover.calls == []
    assert harness.requests == []


@pytest.mark.trio
async def test_ledger_member_missing_from_mirror(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, ledger_members=[("7", COMMITMENT)], mirrored=["1"])

    with pytest.raises(CommitmentNotFoundError):
        await harness.coordinator.run("7", IDENTITY, "round-1", [1])

    assert harness.requests == []
    assert harness.prover.calls == []


@pytest.mark.trio
async def test_invalid_values_fail_before_any_network_call(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, mirrored=[str(COMMITMENT)])

    with pytest.raises(UnsupportedValueError):
        await harness.coordinator.run("7", IDENTITY, "round-1", [1, 9007199254740993.0])

    assert harness.ledger.calls == 0
    assert harness.requests == []


@pytest.mark.trio
async def test_rejected_proof_logged_and_returned(tmp_path: Path, caplog) -> None:
    harness = _Harness(
        tmp_path,
        mirrored=[str(COMMITMENT)],
        handler=lambda request: httpx.Response(400, text="bad proof"),
    )

    result = await harness.coordinator.send_join_proof(
        "7", harness.coordinator.load_group("7"), IDENTITY
    )

    assert result.ok is False
    assert "Error while sending join proof" in caplog.text


@pytest.mark.trio
async def test_rejected_proof_raises_under_raise_policy(tmp_path: Path) -> None:
    harness = _Harness(
        tmp_path,
        mirrored=[str(COMMITMENT)],
        handler=lambda request: httpx.Response(400, text="bad proof"),
        policy=SubmissionPolicy.RAISE,
    )

    with pytest.raises(SubmissionError, match="HTTP 400"):
        await harness.coordinator.send_join_proof(
            "7", harness.coordinator.load_group("7"), IDENTITY
        )


@pytest.mark.trio
async def test_full_run_for_new_device(tmp_path: Path) -> None:
    ref: List[_Harness] = []
    harness = _Harness(tmp_path, mirrored=["1"], handler=_confirming_handler(ref))
    ref.append(harness)

    report = await harness.coordinator.run("7", IDENTITY, "round-1", [1, 2, 3])

    assert harness.paths() == ["/add-member", "/group/7/join-proof", "/group/7/modtrain-proof"]
    assert report.joined is True
    assert report.members == ["1", str(COMMITMENT)]
    assert report.success is True
    summary = summarize(report)
    assert summary["success"] is True
    assert summary["members"] == 2


@pytest.mark.trio
async def test_resolve_group_id_prefers_mirror(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    assert await harness.coordinator.resolve_group_id(timeout=1) == "7"


@pytest.mark.trio
async def test_resolve_group_id_times_out_without_groups(tmp_path: Path, autojump_clock) -> None:
    harness = _Harness(tmp_path)
    harness.mirror.save({})
    with pytest.raises(AwaitTimeoutError):
        await harness.coordinator.resolve_group_id(timeout=10)


def test_group_helper_matches_mirror(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, mirrored=["1", "2"])
    assert harness.coordinator.load_group("7").members == Group(["1", "2"]).members


class _RecordingWitnessBuilder:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def build(self, group: Group, index: int) -> MembershipWitness:
        self.calls.append((group.members, index))
        return MembershipWitness(
            index=index,
            commitment=group.member_at(index),
            data={"members": ["root"], "size": 20},
        )


@pytest.mark.trio
async def test_injected_witness_builder_feeds_the_prover(tmp_path: Path) -> None:
    builder = _RecordingWitnessBuilder()
    harness = _Harness(tmp_path, mirrored=["4", str(COMMITMENT)], witness_builder=builder)

    await harness.coordinator.send_join_proof("7", harness.coordinator.load_group("7"), IDENTITY)

    assert builder.calls == [([4, COMMITMENT], 1)]
    proof = harness.body("/group/7/join-proof")["proof"]
    assert (proof["merkleTreeDepth"], proof["merkleTreeRoot"]) == (20, "root")
