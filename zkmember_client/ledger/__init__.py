"""Ledger event model, chain access and the event bridge."""

from .bridge import ContractEventBridge, apply_event
from .events import (
    ADMISSION_KINDS,
    CHAIN_EVENT_KINDS,
    ChainEventKind,
    EventKind,
    EventPosition,
    NormalizedEvent,
    RawChainEvent,
    normalize,
)
from .source import ChainSource, Web3ChainSource, event_from_log, load_abi

__all__ = [
    "ADMISSION_KINDS",
    "CHAIN_EVENT_KINDS",
    "ChainEventKind",
    "ChainSource",
    "ContractEventBridge",
    "EventKind",
    "EventPosition",
    "NormalizedEvent",
    "RawChainEvent",
    "Web3ChainSource",
    "apply_event",
    "event_from_log",
    "load_abi",
    "normalize",
]
