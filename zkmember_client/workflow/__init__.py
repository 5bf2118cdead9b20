"""Join and model-update proof workflow."""

from .coordinator import SubmissionPolicy, WorkflowCoordinator, WorkflowReport
from .correlator import EventCorrelator, WaitRegistration
from .proofs import (
    Identity,
    MembershipWitness,
    Proof,
    ProofGenerator,
    SnapshotWitnessBuilder,
    SubprocessProofGenerator,
    WitnessBuilder,
)
from .submission import ProofSubmissionClient, SubmissionResult
from .values import (
    ExactInteger,
    NumericString,
    UpdateValue,
    coerce_update_value,
    encode_update_message,
)

__all__ = [
    "EventCorrelator",
    "ExactInteger",
    "Identity",
    "MembershipWitness",
    "NumericString",
    "Proof",
    "ProofGenerator",
    "ProofSubmissionClient",
    "SnapshotWitnessBuilder",
    "SubmissionPolicy",
    "SubmissionResult",
    "SubprocessProofGenerator",
    "UpdateValue",
    "WaitRegistration",
    "WitnessBuilder",
    "WorkflowCoordinator",
    "WorkflowReport",
    "coerce_update_value",
    "encode_update_message",
]
