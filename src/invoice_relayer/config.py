#!/usr/bin/env python3
"""Configuration management for the invoice relayer.

This module provides immutable configuration dataclasses with validation.
Configuration is loaded once from environment variables and passed explicitly
to every component; nothing reads the environment after startup.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .errors import ConfigurationError

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_POLYMER_API_URL = "https://proof.testnet.polymer.zone"


@dataclass(frozen=True, slots=True)
class KnownChain:
    """Static catalogue entry describing where a chain's settings live."""
    key: str
    name: str
    chain_id: int
    env_prefix: str
    prover_env: str

    @property
    def rpc_env(self) -> str:
        return f"{self.env_prefix}_RPC"

    @property
    def contract_env(self) -> str:
        return f"{self.env_prefix}_INVOICEBATCHER_ADDRESS"


KNOWN_CHAINS: dict[str, KnownChain] = {
    chain.key: chain
    for chain in (
        KnownChain("optimism-sepolia", "Optimism Sepolia", 11155420, "OPTIMISM_SEPOLIA",
                   "POLYMER_PROVER_OPTIMISM_TESTNET_CONTRACT_ADDRESS"),
        KnownChain("arbitrum-sepolia", "Arbitrum Sepolia", 421614, "ARBITRUM_SEPOLIA",
                   "POLYMER_PROVER_ARBITRUM_TESTNET_CONTRACT_ADDRESS"),
        KnownChain("base-sepolia", "Base Sepolia", 84532, "BASE_SEPOLIA",
                   "POLYMER_PROVER_BASE_TESTNET_CONTRACT_ADDRESS"),
        KnownChain("mode-sepolia", "Mode Sepolia", 919, "MODE_SEPOLIA",
                   "POLYMER_PROVER_MODE_TESTNET_CONTRACT_ADDRESS"),
        KnownChain("bob-sepolia", "Bob Sepolia", 808813, "BOB_SEPOLIA",
                   "POLYMER_PROVER_BOB_TESTNET_CONTRACT_ADDRESS"),
        KnownChain("ink-sepolia", "Ink Sepolia", 763373, "INK_SEPOLIA",
                   "POLYMER_PROVER_INK_TESTNET_CONTRACT_ADDRESS"),
        KnownChain("unichain-sepolia", "UniChain Sepolia", 1301, "UNICHAIN_SEPOLIA",
                   "POLYMER_PROVER_UNICHAIN_TESTNET_CONTRACT_ADDRESS"),
        KnownChain("mantle-sepolia", "Mantle Sepolia", 5003, "MANTLE_SEPOLIA",
                   "POLYMER_PROVER_MANTLE_TESTNET_CONTRACT_ADDRESS"),
    )
}


def _checksummed(value: str, label: str) -> str:
    if not value:
        raise ConfigurationError(f"{label} is required")
    if not Web3.is_address(value):
        raise ConfigurationError(f"Invalid {label}: {value}")
    return Web3.to_checksum_address(value)


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """One entry of the chain registry.

    Attributes:
        key: Catalogue key (e.g. 'base-sepolia')
        name: Human readable chain name
        chain_id: EVM chain ID, unique within the registry
        rpc_url: HTTP(S) or WS(S) RPC endpoint
        contract_address: Checksummed InvoiceIDBatcher address
        prover_address: Checksummed Polymer prover address
    """

    key: str
    name: str
    chain_id: int
    rpc_url: str
    contract_address: str
    prover_address: str

    SUPPORTED_SCHEMES: ClassVar[set[str]] = {'http', 'https', 'ws', 'wss'}

    def __post_init__(self) -> None:
        """Validate the chain entry."""
        if self.chain_id <= 0:
            raise ConfigurationError(f"Invalid chain ID for {self.name}: {self.chain_id}")

        if not self.rpc_url:
            raise ConfigurationError(f"RPC URL is required for {self.name}")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in self.SUPPORTED_SCHEMES:
            raise ConfigurationError(
                f"Invalid RPC URL scheme for {self.name}: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(
            self, 'contract_address',
            _checksummed(self.contract_address, f"contract address for {self.name}")
        )
        object.__setattr__(
            self, 'prover_address',
            _checksummed(self.prover_address, f"prover address for {self.name}")
        )


@dataclass(frozen=True, slots=True)
class PolymerConfig:
    """Settings for the Polymer proof API client."""
    api_key: str
    api_url: str = DEFAULT_POLYMER_API_URL
    poll_interval: float = 0.5  # seconds between proof queries
    max_poll_attempts: int = 120  # 120 * 0.5s, about one minute
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ConfigurationError("Polymer API key is required (POLYMER_API_KEY)")
        if urlparse(self.api_url).scheme not in ('http', 'https'):
            raise ConfigurationError(f"Invalid Polymer API URL: {self.api_url}")
        if self.poll_interval <= 0:
            raise ConfigurationError(f"Poll interval must be positive, got {self.poll_interval}")
        if self.max_poll_attempts <= 0:
            raise ConfigurationError(
                f"Max poll attempts must be positive, got {self.max_poll_attempts}"
            )


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for event monitoring and proof dispatch."""
    polling_interval: float = 2.0  # seconds between log polls
    dedupe_window: int = 10_000  # identities remembered per chain
    gas_limit: int = 500_000
    receipt_timeout: int = 120  # seconds to wait for a submission receipt
    status_log_interval: int = 30  # seconds

    def __post_init__(self) -> None:
        if self.polling_interval <= 0:
            raise ConfigurationError(
                f"Polling interval must be positive, got {self.polling_interval}"
            )
        if self.polling_interval > 300:
            raise ConfigurationError(
                f"Polling interval too long (max 300s), got {self.polling_interval}"
            )
        if self.dedupe_window <= 0:
            raise ConfigurationError(f"Dedupe window must be positive, got {self.dedupe_window}")
        if self.gas_limit <= 0:
            raise ConfigurationError(f"Gas limit must be positive, got {self.gas_limit}")


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Main configuration for the relayer.

    Attributes:
        chains: The chain registry, in activation order
        polymer: Proof API settings
        private_key: Key of the wallet that submits proofs on every chain
        monitoring: Polling and dispatch settings
    """

    chains: tuple[ChainConfig, ...]
    polymer: PolymerConfig
    private_key: str
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def __post_init__(self) -> None:
        """Validate relay configuration."""
        if not self.chains:
            raise ConfigurationError("No chains are activated with a complete configuration")

        seen: set[int] = set()
        for chain in self.chains:
            if chain.chain_id in seen:
                raise ConfigurationError(f"Duplicate chain ID in registry: {chain.chain_id}")
            seen.add(chain.chain_id)

        key = self.private_key.removeprefix('0x') if self.private_key else ''
        if len(key) != 64:
            raise ConfigurationError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )
        try:
            int(key, 16)
        except ValueError:
            raise ConfigurationError("Invalid private key format. Must be hexadecimal") from None

    def chain(self, chain_id: int) -> ChainConfig:
        """Look up a registered chain by ID."""
        for chain in self.chains:
            if chain.chain_id == chain_id:
                return chain
        raise KeyError(chain_id)

    def targets(self, source_chain_id: int) -> list[ChainConfig]:
        """All registered chains except the source."""
        return [chain for chain in self.chains if chain.chain_id != source_chain_id]

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Load configuration from environment variables.

        Chains listed in ACTIVATED_CHAINS that are unknown or miss a required
        setting are skipped with a warning.

        Returns:
            RelayConfig instance with loaded values

        Raises:
            ConfigurationError: If no chain can be activated or a required
                global setting is missing or invalid
        """
        activated = [
            key.strip() for key in os.environ.get("ACTIVATED_CHAINS", "").split(",") if key.strip()
        ]
        if not activated:
            raise ConfigurationError(
                "No chains are activated. Please set the ACTIVATED_CHAINS environment variable."
            )

        chains: list[ChainConfig] = []
        for key in activated:
            if (known := KNOWN_CHAINS.get(key)) is None:
                logger.warning(f"Skipping unknown chain '{key}'")
                continue

            rpc_url = os.environ.get(known.rpc_env, "")
            contract = os.environ.get(known.contract_env, "")
            prover = os.environ.get(known.prover_env, "")
            missing = [
                name for name, value in (
                    (known.rpc_env, rpc_url),
                    (known.contract_env, contract),
                    (known.prover_env, prover),
                ) if not value
            ]
            if missing:
                logger.warning(f"Skipping {known.name} - missing {', '.join(missing)}")
                continue

            try:
                chains.append(ChainConfig(
                    key=known.key,
                    name=known.name,
                    chain_id=known.chain_id,
                    rpc_url=rpc_url,
                    contract_address=contract,
                    prover_address=prover,
                ))
            except ConfigurationError as e:
                logger.warning(f"Skipping {known.name} - {e}")

        polymer = PolymerConfig(
            api_key=os.environ.get("POLYMER_API_KEY", ""),
            api_url=os.environ.get("POLYMER_API_URL", DEFAULT_POLYMER_API_URL),
        )

        try:
            polling_interval = float(os.environ.get("POLLING_INTERVAL", "2"))
            gas_limit = int(os.environ.get("GAS_LIMIT", "500000"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid monitoring setting: {e}") from None

        monitoring = MonitoringConfig(polling_interval=polling_interval, gas_limit=gas_limit)

        private_key = os.environ.get("PRIVATE_KEY", "")
        if not private_key:
            raise ConfigurationError(
                "PRIVATE_KEY environment variable is required. "
                "This wallet signs the proof submissions on every target chain"
            )

        return cls(
            chains=tuple(chains),
            polymer=polymer,
            private_key=private_key,
            monitoring=monitoring,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format (hiding secrets)."""
        logger.info("=" * 60)
        logger.info("Invoice Relayer Configuration")
        logger.info("=" * 60)

        logger.info(f"Chains ({len(self.chains)}):")
        for chain in self.chains:
            logger.info(f"  {chain.name} [{chain.chain_id}]")
            logger.info(f"    RPC URL: {chain.rpc_url}")
            logger.info(f"    InvoiceIDBatcher: {chain.contract_address}")
            logger.info(f"    Prover: {chain.prover_address}")

        logger.info("Polymer API:")
        logger.info(f"  URL: {self.polymer.api_url}")
        logger.info(f"  API Key: {'[SET]' if self.polymer.api_key else '[NOT SET]'}")
        logger.info(
            f"  Polling: every {self.polymer.poll_interval}s, "
            f"max {self.polymer.max_poll_attempts} attempts"
        )

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Dedupe Window: {self.monitoring.dedupe_window}")
        logger.info(f"  Gas Limit: {self.monitoring.gas_limit}")
        logger.info(f"  Private Key: {'[SET]' if self.private_key else '[NOT SET]'}")
        logger.info("=" * 60)
