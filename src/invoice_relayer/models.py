#!/usr/bin/env python3
"""Data models for the invoice relayer.

Immutable records passed between the listeners, the proof client and the
dispatcher. Expected failures are carried as values (ProofResult,
DispatchOutcome) rather than raised.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import RelayerError


@dataclass(frozen=True, slots=True)
class RawEvent:
    """An InvoiceBatch event observed on a source chain.

    Attributes:
        source_chain_id: Chain the event was emitted on
        block_number: Block containing the transaction
        transaction_hash: 0x-prefixed transaction hash
        log_index: Block-global log index
        position_in_block: Index of the transaction within its block
        sender: Checksummed address that batched the invoices
        invoice_hashes: Ordered 32-byte invoice hashes
        block_hash: 0x-prefixed block hash
    """

    source_chain_id: int
    block_number: int
    transaction_hash: str
    log_index: int
    position_in_block: int
    sender: str
    invoice_hashes: tuple[bytes, ...]
    block_hash: str = ""

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"RawEvent(chain={self.source_chain_id}, "
            f"block={self.block_number}, "
            f"tx={self.transaction_hash[:10]}..., "
            f"invoices={len(self.invoice_hashes)})"
        )

    @property
    def unique_key(self) -> tuple[int, str, int]:
        """Identity used for listener-level de-duplication."""
        return (self.source_chain_id, self.transaction_hash, self.log_index)

    @property
    def ticket_key(self) -> tuple[int, str]:
        """Identity used for in-flight exclusivity."""
        return (self.source_chain_id, self.transaction_hash)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "source_chain_id": self.source_chain_id,
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "position_in_block": self.position_in_block,
            "sender": self.sender,
            "invoice_hashes": ["0x" + h.hex() for h in self.invoice_hashes],
            "block_hash": self.block_hash,
        }


@dataclass(frozen=True, slots=True)
class ProofJob:
    """A proof job accepted by the Polymer API."""
    job_id: Any


@dataclass(frozen=True, slots=True)
class ProofRecord:
    """A ready proof; the bytes are opaque and forwarded verbatim."""
    proof: bytes
    elapsed_seconds: float


@dataclass(frozen=True, slots=True)
class ProofResult:
    """Outcome of one proof acquisition: a record or the error that ended it."""
    record: ProofRecord | None = None
    error: RelayerError | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None

    @classmethod
    def success(cls, record: ProofRecord) -> "ProofResult":
        return cls(record=record)

    @classmethod
    def failure(cls, error: RelayerError) -> "ProofResult":
        return cls(error=error)


class DispatchStatus(Enum):
    """Result of submitting a proof to one target chain."""
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    """Per-target result of a fan-out.

    Attributes:
        chain_id: Target chain ID
        chain_name: Target chain name
        status: SUCCESS or FAILURE
        detail: Transaction hash on success, failure reason otherwise
    """

    chain_id: int
    chain_name: str
    status: DispatchStatus
    detail: str

    @property
    def succeeded(self) -> bool:
        return self.status is DispatchStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class FanOutReport:
    """All outcomes of delivering one proof to every other chain."""
    source_chain_id: int
    outcomes: tuple[DispatchOutcome, ...]

    @property
    def succeeded(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> list[DispatchOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    def by_chain(self) -> dict[int, DispatchOutcome]:
        return {o.chain_id: o for o in self.outcomes}
