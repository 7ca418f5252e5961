"""Shared fixtures for the invoice relayer tests."""

import pytest
from web3 import Web3

from invoice_relayer.config import ChainConfig, MonitoringConfig, PolymerConfig, RelayConfig
from invoice_relayer.models import RawEvent

PRIVATE_KEY = "0x" + "11" * 32

BASE_SEPOLIA = 84532
OPTIMISM_SEPOLIA = 11155420
ARBITRUM_SEPOLIA = 421614

TX_HASH = "0x" + "ab" * 32
SENDER = Web3.to_checksum_address("0x" + "cd" * 20)


def make_chain(key: str, name: str, chain_id: int, marker: int) -> ChainConfig:
    return ChainConfig(
        key=key,
        name=name,
        chain_id=chain_id,
        rpc_url=f"https://{key}.rpc.test",
        contract_address="0x" + f"{marker:02x}" * 20,
        prover_address="0x" + f"{marker + 1:02x}" * 20,
    )


@pytest.fixture
def chains() -> tuple[ChainConfig, ...]:
    """Registry of three chains: A (Base), B (Optimism), C (Arbitrum)."""
    return (
        make_chain("base-sepolia", "Base Sepolia", BASE_SEPOLIA, 0xa0),
        make_chain("optimism-sepolia", "Optimism Sepolia", OPTIMISM_SEPOLIA, 0xb0),
        make_chain("arbitrum-sepolia", "Arbitrum Sepolia", ARBITRUM_SEPOLIA, 0xc0),
    )


@pytest.fixture
def relay_config(chains) -> RelayConfig:
    return RelayConfig(
        chains=chains,
        polymer=PolymerConfig(api_key="test-api-key", api_url="https://proof.test"),
        private_key=PRIVATE_KEY,
        monitoring=MonitoringConfig(polling_interval=60, status_log_interval=60),
    )


@pytest.fixture
def make_event():
    """Factory for RawEvent instances with sensible defaults."""
    def _make_event(
        chain_id: int = BASE_SEPOLIA,
        tx_hash: str = TX_HASH,
        log_index: int = 0,
        block_number: int = 100,
    ) -> RawEvent:
        return RawEvent(
            source_chain_id=chain_id,
            block_number=block_number,
            transaction_hash=tx_hash,
            log_index=log_index,
            position_in_block=3,
            sender=SENDER,
            invoice_hashes=(b"\x01" * 32, b"\x02" * 32),
        )

    return _make_event
