#!/usr/bin/env python3
"""Proof fan-out for the invoice relayer.

This module submits one proof to the InvoiceIDBatcher contract of every
registered chain other than the proof's source, all in parallel, and reports
a per-chain outcome. One chain failing never affects the others.
"""

import asyncio
import logging
from collections.abc import Mapping

from web3 import Web3
from web3.types import TxReceipt

from .config import ChainConfig, RelayConfig
from .errors import DispatchError
from .models import DispatchOutcome, DispatchStatus, FanOutReport
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class ProofDispatcher:
    """Delivers proofs to target chains via invoicesFromSource(bytes)."""

    def __init__(self, config: RelayConfig, contract_utils: Mapping[int, ContractUtility]) -> None:
        """
        Initialize the ProofDispatcher.

        Args:
            config: Relay configuration (registry and gas settings)
            contract_utils: Signing connections keyed by chain ID
        """
        self.config = config
        self.contract_utils = contract_utils

        # Same wallet on every chain; serialized sends each see the previous pending nonce
        self._send_locks: dict[int, asyncio.Lock] = {
            chain.chain_id: asyncio.Lock() for chain in config.chains
        }

    async def _submit(self, target: ChainConfig, proof: bytes) -> str:
        """
        Send the proof to one chain and wait for the receipt.

        Returns:
            Transaction hash of the confirmed submission

        Raises:
            DispatchError: If sending fails or the transaction reverts
        """
        contract_util = self.contract_utils.get(target.chain_id)
        if contract_util is None:
            raise DispatchError(target.chain_id, target.name, "no RPC connection configured")

        try:
            contract = contract_util.contract(target.contract_address)
            async with self._send_locks[target.chain_id]:
                tx_hash = await contract.functions.invoicesFromSource(proof).transact({
                    'gas': self.config.monitoring.gas_limit,
                })
            logger.info(f">  {target.name} transaction hash: {Web3.to_hex(tx_hash)}")

            receipt: TxReceipt = await contract_util.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.monitoring.receipt_timeout
            )
        except Exception as e:
            raise DispatchError(target.chain_id, target.name, str(e)) from e

        if (status := receipt.get('status', 0)) != 1:
            raise DispatchError(
                target.chain_id,
                target.name,
                f"transaction {Web3.to_hex(tx_hash)} reverted (status={status})",
            )

        logger.info(f">  {target.name} confirmed in block {receipt.get('blockNumber')}")
        return Web3.to_hex(tx_hash)

    async def submit_to_chain(self, target: ChainConfig, proof: bytes) -> DispatchOutcome:
        """
        Submit a proof to one target chain.

        Returns:
            SUCCESS outcome with the tx hash, or FAILURE with the reason
        """
        logger.info(f"Updating {target.name}...")
        try:
            tx_hash = await self._submit(target, proof)
        except DispatchError as e:
            logger.error(str(e))
            return DispatchOutcome(target.chain_id, target.name, DispatchStatus.FAILURE, str(e))

        return DispatchOutcome(target.chain_id, target.name, DispatchStatus.SUCCESS, tx_hash)

    async def fan_out(self, proof: bytes, source_chain_id: int) -> FanOutReport:
        """
        Submit a proof to every registered chain except its source.

        All submissions start together and the call returns once every one of
        them has settled. Failures are reported in the result, never raised.

        Args:
            proof: Raw proof bytes, forwarded verbatim
            source_chain_id: Chain the proven event came from

        Returns:
            FanOutReport with one outcome per target chain
        """
        targets = self.config.targets(source_chain_id)
        if not targets:
            logger.warning(f"No target chains registered besides source chain {source_chain_id}")
            return FanOutReport(source_chain_id=source_chain_id, outcomes=())

        results = await asyncio.gather(
            *(self.submit_to_chain(target, proof) for target in targets),
            return_exceptions=True,
        )

        outcomes: list[DispatchOutcome] = []
        for target, result in zip(targets, results):
            match result:
                case DispatchOutcome():
                    outcomes.append(result)
                case Exception():
                    reason = str(DispatchError(target.chain_id, target.name, str(result)))
                    logger.error(reason)
                    outcomes.append(
                        DispatchOutcome(target.chain_id, target.name, DispatchStatus.FAILURE, reason)
                    )
                case _:
                    raise result

        return FanOutReport(source_chain_id=source_chain_id, outcomes=tuple(outcomes))
