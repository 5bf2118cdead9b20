"""Ledger access for the event bridge."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence

import trio

from zkmember_client.errors import ChainReadError, ConfigurationError

from .events import CHAIN_EVENT_KINDS, ChainEventKind, EventPosition, RawChainEvent

logger = logging.getLogger(__name__)


class ChainSource(Protocol):
    async def head(self) -> int:
        ...

    async def fetch_events(self, from_block: int, to_block: int) -> List[RawChainEvent]:
        ...

    async def has_member(self, group_id: str, commitment: int) -> bool:
        ...


def load_abi(abi_path: Path | str) -> List[dict]:
    """Read a contract ABI from a bare list or a build artifact with an ``abi`` key."""
    path = Path(abi_path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"cannot read ABI file {path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("abi")
    if not isinstance(data, list):
        raise ConfigurationError(f"ABI file {path} has no ABI list")
    return data


def event_from_log(kind: ChainEventKind, log: Any) -> RawChainEvent:
    """Convert a decoded web3 event log into a raw chain event."""
    tx_hash = log["transactionHash"]
    if hasattr(tx_hash, "hex"):
        tx_hash = tx_hash.hex()
    position = EventPosition(int(log["blockNumber"]), int(log["logIndex"]))
    args = list(log["args"].values())
    return RawChainEvent.from_args(kind, args, position, str(tx_hash))


class Web3ChainSource:
    """ChainSource backed by a web3 HTTP provider.

    web3 calls block, so every call runs in a worker thread.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        abi: Sequence[dict],
        *,
        request_timeout: float = 15.0,
        web3: Optional[Any] = None,
    ) -> None:
        if web3 is None:
            from web3 import HTTPProvider, Web3

            web3 = Web3(HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._web3 = web3
        try:
            address = web3.to_checksum_address(contract_address)
        except ValueError as exc:
            raise ConfigurationError(f"invalid contract address: {contract_address}") from exc
        self._contract = web3.eth.contract(address=address, abi=list(abi))

    async def head(self) -> int:
        return int(await self._call(lambda: self._web3.eth.block_number, "block_number"))

    async def fetch_events(self, from_block: int, to_block: int) -> List[RawChainEvent]:
        if to_block < from_block:
            return []
        events: List[RawChainEvent] = []
        for kind in CHAIN_EVENT_KINDS:
            logs = await self._call(
                lambda kind=kind: getattr(self._contract.events, kind.value)().get_logs(
                    from_block=from_block, to_block=to_block
                ),
                f"get_logs({kind.value})",
            )
            for log in logs:
                events.append(event_from_log(kind, log))
        logger.debug(
            "Fetched %d event(s) in blocks %d..%d", len(events), from_block, to_block
        )
        return events

    async def has_member(self, group_id: str, commitment: int) -> bool:
        return bool(
            await self._call(
                lambda: self._contract.functions.hasMember(int(group_id), int(commitment)).call(),
                "hasMember",
            )
        )

    async def _call(self, fn: Any, label: str) -> Any:
        try:
            return await trio.to_thread.run_sync(fn)
        except ChainReadError:
            raise
        except Exception as exc:
            raise ChainReadError(f"{label} failed: {exc}") from exc
