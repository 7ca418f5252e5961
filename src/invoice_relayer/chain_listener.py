"""
Per-chain listener for InvoiceBatch events.

Polls the chain's InvoiceIDBatcher contract for new InvoiceBatch logs over
RPC and exposes them as an async stream of RawEvent records. Each listener
owns exactly one chain and knows nothing about the other chains.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import suppress
from typing import Any

from web3 import Web3
from web3.types import EventData

from .config import ChainConfig
from .errors import ConfigurationError
from .models import RawEvent
from .utils.contract_utility import ContractUtility
from .utils.encoding import to_bytes_safe, to_hex_str
from .utils.event_cache import SeenEventCache


class ChainListener:
    """
    Polls one chain for InvoiceBatch events and queues them for the relayer.

    Logs are de-duplicated by (chain ID, tx hash, log index), so a log
    returned by more than one poll is delivered once.
    """

    EVENT_NAME = "InvoiceBatch"
    MAX_ASSEMBLY_ATTEMPTS = 3

    def __init__(
        self,
        chain: ChainConfig,
        contract_util: ContractUtility,
        seen: SeenEventCache | None = None,
        polling_interval: float = 2.0,
    ) -> None:
        """
        Initialize the listener.

        Args:
            chain: Registry entry of the chain to watch
            contract_util: Connection to that chain
            seen: De-duplication cache for delivered events
            polling_interval: Seconds between log polls

        Raises:
            ConfigurationError: If the contract ABI lacks the InvoiceBatch event
        """
        self.chain = chain
        self.contract_util = contract_util
        self.w3 = contract_util.w3
        self.seen = seen if seen is not None else SeenEventCache()
        self.polling_interval = polling_interval

        self.contract = contract_util.contract(chain.contract_address)
        if not hasattr(self.contract.events, self.EVENT_NAME):
            raise ConfigurationError(f"Event {self.EVENT_NAME} not found in contract ABI")
        self.event_obj = getattr(self.contract.events, self.EVENT_NAME)

        # State tracking
        self.last_processed_block: int | None = None
        self.is_listening = False
        self.events_delivered = 0
        self._poll_task: asyncio.Task | None = None
        self._queue: asyncio.Queue[RawEvent | None] = asyncio.Queue()
        self._assembly_failures: dict[tuple[int, str, int], int] = {}

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def start(self) -> None:
        """
        Start watching the chain. Calling it again while listening is a no-op.

        Raises:
            Exception: Any connection or RPC failure while establishing the
                watch propagates to the caller
        """
        if self.is_listening:
            return

        self.logger.info(f"Starting listener for {self.chain.name}...")
        self.logger.info(f">  Contract: {self.chain.contract_address}")
        self.logger.info(f">  Chain ID: {self.chain.chain_id}")

        await self.contract_util.connect()
        current_block = await self.w3.eth.block_number
        self.logger.info(f">  Current block: {current_block}")

        # No backfill: only blocks after the current head are watched
        self.last_processed_block = current_block
        self.is_listening = True
        self._poll_task = asyncio.create_task(
            self._poll_loop(), name=f"listener-{self.chain.key}"
        )
        self.logger.info(f"Listener active for {self.chain.name}")

    async def stop(self) -> None:
        """Stop watching and close the event stream. No-op if not listening."""
        if not self.is_listening:
            return

        self.is_listening = False
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._poll_task
        self._poll_task = None

        self._queue.put_nowait(None)
        self.logger.info(f"Stopped listener for {self.chain.name}")

    async def events(self) -> AsyncIterator[RawEvent]:
        """Yield delivered events in order until the listener is stopped."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def _poll_loop(self) -> None:
        while self.is_listening:
            await asyncio.sleep(self.polling_interval)
            try:
                await self.poll_for_events()
            except Exception as e:
                # Keep polling despite errors
                self.logger.error(f"Error in polling loop for {self.chain.name}: {e}", exc_info=True)

    async def poll_for_events(self) -> None:
        """
        Fetch InvoiceBatch logs since the last processed block and queue them.

        On an RPC error the cursor is not advanced, so the next poll covers
        the same range again.
        """
        try:
            current_block = await self.w3.eth.block_number

            # Skip if no new blocks
            if self.last_processed_block is not None and current_block <= self.last_processed_block:
                return

            from_block = (
                self.last_processed_block + 1
                if self.last_processed_block is not None
                else current_block
            )

            logs = await self.event_obj.get_logs(from_block=from_block, to_block=current_block)
        except Exception as e:
            self.logger.error(f"Error polling {self.chain.name} for events: {e}")
            return

        if logs:
            self.logger.info(
                f"Found {len(logs)} {self.EVENT_NAME} events on {self.chain.name} "
                f"in blocks {from_block}-{current_block}"
            )

        retry_from: int | None = None
        for log in logs:
            if not await self._handle_log(log) and retry_from is None:
                retry_from = int(log['blockNumber'])

        # Leave failed blocks inside the next polling range
        self.last_processed_block = current_block if retry_from is None else retry_from - 1

    async def _handle_log(self, log: EventData) -> bool:
        """
        Turn one log into a RawEvent and queue it.

        Returns:
            False if the event could not be assembled and should be retried
        """
        key: tuple[int, str, int] | None = None
        try:
            tx_hash = to_hex_str(log['transactionHash'])
            key = (self.chain.chain_id, tx_hash, int(log['logIndex']))

            if key in self.seen:
                return True

            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            args: Any = log['args']
            block_hash = log.get('blockHash')

            event = RawEvent(
                source_chain_id=self.chain.chain_id,
                block_number=int(log['blockNumber']),
                transaction_hash=tx_hash,
                log_index=key[2],
                position_in_block=int(receipt['transactionIndex']),
                sender=Web3.to_checksum_address(args['sender']),
                invoice_hashes=tuple(to_bytes_safe(h) for h in args['invoices']),
                block_hash=to_hex_str(block_hash) if block_hash else "",
            )
        except Exception as e:
            self.logger.error(f"Error processing event on {self.chain.name}: {e}", exc_info=True)
            return self._record_failure(key)

        self._queue.put_nowait(event)
        self.seen.add(event.unique_key)
        self._assembly_failures.pop(key, None)
        self.events_delivered += 1
        self.logger.info(
            f"New batch event from {self.chain.name}: sender={event.sender} "
            f"invoices={len(event.invoice_hashes)} block={event.block_number} "
            f"tx={event.transaction_hash}"
        )
        self.logger.debug(f"Event details: {event.to_dict()}")
        return True

    def _record_failure(self, key: tuple[int, str, int] | None) -> bool:
        if key is None:
            # Malformed log, retrying will not help
            return True

        attempts = self._assembly_failures.get(key, 0) + 1
        if attempts >= self.MAX_ASSEMBLY_ATTEMPTS:
            self.logger.error(
                f"Giving up on event {key[1]}:{key[2]} on {self.chain.name} "
                f"after {attempts} attempts"
            )
            self._assembly_failures.pop(key, None)
            self.seen.add(key)
            return True

        self._assembly_failures[key] = attempts
        return False

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the listener.

        Returns:
            Dictionary with status information
        """
        return {
            "chain": self.chain.name,
            "chain_id": self.chain.chain_id,
            "is_listening": self.is_listening,
            "last_processed_block": self.last_processed_block,
            "contract_address": self.chain.contract_address,
            "events_delivered": self.events_delivered,
            "cache_size": len(self.seen),
        }
