"""
Error taxonomy for the invoice relayer.

Configuration errors are fatal at startup. Everything else is scoped to a
single event or a single target chain and never stops the relayer.
"""


class RelayerError(Exception):
    """Base class for all relayer errors."""


class ConfigurationError(RelayerError, ValueError):
    """Missing or invalid registry entry, credential or setting."""


class TransportError(RelayerError):
    """An RPC or HTTP call failed (network, non-2xx, malformed response)."""


class ProtocolMismatchError(RelayerError):
    """Expected on-chain data or proof payload did not have the expected shape."""


class ProofTimeoutError(RelayerError):
    """The proof poll ceiling was reached without a ready proof."""


class DispatchError(RelayerError):
    """Submitting a proof to one target chain failed."""

    def __init__(self, chain_id: int, chain_name: str, reason: str) -> None:
        self.chain_id = chain_id
        self.chain_name = chain_name
        self.reason = reason
        super().__init__(f"Failed to update {chain_name}: {reason}")
