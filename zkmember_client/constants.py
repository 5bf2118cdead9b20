"""Constants shared by the bridge and the workflow."""

from __future__ import annotations

DEFAULT_PORT = 3333
DEFAULT_MIRROR_PATH = "group_members.json"

ADD_MEMBER_ENDPOINT = "/add-member"
JOIN_PROOF_ENDPOINT = "/group/{group_id}/join-proof"
MODTRAIN_PROOF_ENDPOINT = "/group/{group_id}/modtrain-proof"

JOIN_SCOPE_PREFIX = "join-"
JOIN_MESSAGE_PREFIX = "join-"
JOIN_MESSAGE_COMMITMENT_DIGITS = 8

# Largest integer a float represents exactly.
MAX_SAFE_INTEGER = 2**53 - 1

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_CONFIRMATION_TIMEOUT = 120.0
DEFAULT_BACKFILL_MAX_ATTEMPTS = 5
DEFAULT_BACKFILL_BACKOFF = 1.0
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_PROVER_TIMEOUT = 120.0


def join_endpoint(group_id: str) -> str:
    return JOIN_PROOF_ENDPOINT.format(group_id=group_id)


def modtrain_endpoint(group_id: str) -> str:
    return MODTRAIN_PROOF_ENDPOINT.format(group_id=group_id)
