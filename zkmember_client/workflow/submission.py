"""HTTP client for the verifier and admission endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from zkmember_client.constants import ADD_MEMBER_ENDPOINT, DEFAULT_REQUEST_TIMEOUT
from zkmember_client.errors import SubmissionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionResult:
    endpoint: str
    ok: bool
    status_code: Optional[int] = None
    body: Any = None
    error: Optional[str] = None

    def raise_for_error(self) -> "SubmissionResult":
        if not self.ok:
            raise SubmissionError(f"{self.endpoint}: {self.error}")
        return self


class ProofSubmissionClient:
    """
    Posts JSON payloads to the remote verifier.

    One attempt per call, no retry; a failure comes back as a
    ``SubmissionResult`` with ``ok=False`` and the caller decides what to do.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url, timeout=timeout, transport=transport
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> "ProofSubmissionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def submit(self, endpoint: str, payload: Dict[str, Any]) -> SubmissionResult:
        try:
            response = await self._client.post(endpoint, json=payload)
        except httpx.HTTPError as exc:
            return SubmissionResult(endpoint, ok=False, error=f"transport error: {exc}")

        body = _response_body(response)
        if response.is_success:
            return SubmissionResult(endpoint, ok=True, status_code=response.status_code, body=body)
        return SubmissionResult(
            endpoint,
            ok=False,
            status_code=response.status_code,
            body=body,
            error=f"HTTP {response.status_code}: {body}",
        )

    async def request_admission(self, group_id: str, commitment: int) -> SubmissionResult:
        return await self.submit(
            ADD_MEMBER_ENDPOINT,
            {"groupId": str(group_id), "identityCommitment": str(commitment)},
        )


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
