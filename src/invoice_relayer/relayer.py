"""
Invoice relayer implementation.

This module contains the main relayer service: it runs one listener per
registered chain, acquires a Polymer proof for every InvoiceBatch event and
fans the proof out to all other chains, handling at most one attempt per
source transaction at a time.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any

from .chain_listener import ChainListener
from .config import RelayConfig
from .dispatcher import ProofDispatcher
from .errors import ConfigurationError
from .models import FanOutReport, ProofRecord, RawEvent
from .proof_client import ProofClient
from .utils.contract_utility import ContractUtility
from .utils.event_cache import SeenEventCache

logger = logging.getLogger(__name__)


class RelayerState(Enum):
    """Lifecycle state of the relayer."""
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"


class InvoiceRelayer:
    """
    Main relayer service that ties listeners, proof acquisition and fan-out together.

    In-flight exclusivity relies on the single-threaded event loop: the
    ticket check and insert in handle_event happen without awaiting.
    """

    PUMP_DRAIN_TIMEOUT = 5.0  # seconds

    def __init__(
        self,
        config: RelayConfig,
        proof_client: ProofClient | None = None,
        dispatcher: ProofDispatcher | None = None,
    ) -> None:
        """
        Initialize the relayer.

        Args:
            config: Relay configuration
            proof_client: Proof client override (built from config if omitted)
            dispatcher: Dispatcher override (built from config if omitted)
        """
        self.config = config
        self.state = RelayerState.UNINITIALIZED

        # One signing connection per chain, shared read-only after init
        self.contract_utils: dict[int, ContractUtility] = {
            chain.chain_id: ContractUtility(chain.rpc_url, config.private_key)
            for chain in config.chains
        }
        self.proof_client = proof_client or ProofClient(
            config.polymer,
            {chain_id: util.w3 for chain_id, util in self.contract_utils.items()},
        )
        self.dispatcher = dispatcher or ProofDispatcher(config, self.contract_utils)

        self.listeners: dict[int, ChainListener] = {}
        self.seen_events: dict[int, SeenEventCache] = {}

        # Processing tickets: (source chain ID, tx hash) -> start time
        self.processing_events: dict[tuple[int, str], float] = {}
        self._handling_tasks: set[asyncio.Task] = set()
        self._inbox: asyncio.Queue[RawEvent] = asyncio.Queue()

        # Async coordination
        self.shutdown_event = asyncio.Event()

        # Metrics tracking
        self.events_received = 0
        self.duplicates_discarded = 0
        self.events_discarded = 0
        self.relays_completed = 0
        self.relays_failed = 0
        self.dispatch_successes = 0
        self.dispatch_failures = 0

    @classmethod
    def from_env(cls) -> "InvoiceRelayer":
        """
        Create an InvoiceRelayer from environment variables.

        Raises:
            ConfigurationError: If the environment does not describe a usable setup
        """
        config = RelayConfig.from_env()
        config.log_config()
        return cls(config)

    @property
    def wallet_address(self) -> str | None:
        first = next(iter(self.contract_utils.values()), None)
        return first.address if first else None

    def init(self) -> None:
        """
        Build one listener per registered chain.

        Chains whose listener cannot be constructed are skipped with a warning.

        Raises:
            ConfigurationError: If no listener could be constructed
        """
        if self.state is not RelayerState.UNINITIALIZED:
            return

        logger.info(f"Using wallet address: {self.wallet_address}")

        for chain in self.config.chains:
            contract_util = self.contract_utils.get(chain.chain_id)
            if contract_util is None or not chain.rpc_url or not chain.contract_address:
                logger.warning(f"Skipping {chain.name} - no RPC or invoice batcher address configured")
                continue

            seen = SeenEventCache(self.config.monitoring.dedupe_window)
            try:
                listener = ChainListener(
                    chain,
                    contract_util,
                    seen=seen,
                    polling_interval=self.config.monitoring.polling_interval,
                )
            except Exception as e:
                logger.warning(f"Skipping {chain.name} - cannot create listener: {e}")
                continue

            logger.info(f">  {chain.name} contract: {chain.contract_address}")
            self.seen_events[chain.chain_id] = seen
            self.listeners[chain.chain_id] = listener

        if not self.listeners:
            raise ConfigurationError("No chains configured with valid invoice batcher addresses")

        self.state = RelayerState.INITIALIZED

    async def start(self) -> None:
        """
        Start every listener.

        A listener that fails to start is dropped; its chain still receives
        proofs from the others.

        Raises:
            ConfigurationError: If no listener could be started
        """
        if self.state is RelayerState.RUNNING:
            return
        if self.state is RelayerState.UNINITIALIZED:
            self.init()

        logger.info("Starting relayer...")

        for chain_id, listener in list(self.listeners.items()):
            try:
                await listener.start()
            except Exception as e:
                logger.error(f"Failed to start listener for {listener.chain.name}: {e}")
                del self.listeners[chain_id]

        if not self.listeners:
            raise ConfigurationError("No chain could be listened to")

        self.state = RelayerState.RUNNING
        logger.info(f"Relayer active and listening on {len(self.listeners)} chains")

    async def stop(self) -> None:
        """Stop every listener. Relays already in progress are not cancelled."""
        if self.state is RelayerState.STOPPED:
            return

        logger.info("Stopping relayer...")
        for listener in self.listeners.values():
            try:
                await listener.stop()
            except Exception as e:
                logger.warning(f"Error stopping listener for {listener.chain.name}: {e}")

        self.state = RelayerState.STOPPED

    def request_stop(self) -> None:
        """Ask a running relayer to shut down (safe to call from a signal handler)."""
        self.shutdown_event.set()

    async def handle_event(self, event: RawEvent) -> FanOutReport | None:
        """
        Relay one batch event: acquire its proof and fan it out.

        Args:
            event: The event to relay

        Returns:
            The fan-out report, or None if the event was a duplicate in
            flight or its proof could not be acquired
        """
        ticket = event.ticket_key
        if ticket in self.processing_events:
            self.duplicates_discarded += 1
            logger.debug(f"Discarding duplicate in-flight event {event}")
            return None
        self.processing_events[ticket] = time.monotonic()

        try:
            source_name = self._chain_name(event.source_chain_id)
            logger.info(f"Relaying batch event from {source_name}:")
            logger.info(f">  Sender: {event.sender}")
            logger.info(f">  Invoices: {len(event.invoice_hashes)}")
            logger.info(f">  Block: {event.block_number}")
            logger.info(f">  Tx Hash: {event.transaction_hash}")

            result = await self.proof_client.acquire(event)
            if (record := result.record) is None:
                self.relays_failed += 1
                logger.error(
                    f"Proof acquisition failed for tx {event.transaction_hash} "
                    f"on {source_name}: {result.error}"
                )
                return None

            report = await self.dispatcher.fan_out(record.proof, event.source_chain_id)
            self._log_report(report, record)
            self.relays_completed += 1
            return report

        except Exception as e:
            self.relays_failed += 1
            logger.error(f"Error processing event {event}: {e}", exc_info=True)
            return None
        finally:
            self.processing_events.pop(ticket, None)

    def _log_report(self, report: FanOutReport, record: ProofRecord) -> None:
        self.dispatch_successes += len(report.succeeded)
        self.dispatch_failures += len(report.failed)

        logger.info("Update Results:")
        for outcome in report.outcomes:
            if outcome.succeeded:
                logger.info(f"✓ {outcome.chain_name}: Updated successfully ({outcome.detail})")
            else:
                logger.error(f"✗ {outcome.chain_name}: Failed - {outcome.detail}")
        logger.info(f">  Polymer API proof time: {record.elapsed_seconds} seconds")

    def _chain_name(self, chain_id: int) -> str:
        try:
            return self.config.chain(chain_id).name
        except KeyError:
            return f"chain {chain_id}"

    async def _pump(self, listener: ChainListener) -> None:
        """Forward one listener's events into the shared inbox."""
        async for event in listener.events():
            await self._inbox.put(event)

    async def _event_loop(self) -> None:
        """Consume the inbox, handling every event in its own task."""
        while True:
            event = await self._inbox.get()
            self.events_received += 1
            task = asyncio.create_task(self.handle_event(event))
            self._handling_tasks.add(task)
            task.add_done_callback(self._handling_tasks.discard)

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while True:
            await asyncio.sleep(self.config.monitoring.status_log_interval)
            stats = self.get_stats()
            if stats['in_flight'] > 0:
                logger.info(
                    f"Status: {stats['in_flight']} relays in flight, "
                    f"{stats['relays_completed']} completed, "
                    f"{stats['relays_failed']} failed"
                )
            else:
                logger.debug(f"Status: {stats}")

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has ended."""
        for name, task in tasks.items():
            if task.done():
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                else:
                    logger.error(f"{name} task exited unexpectedly")
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Cancel the background tasks and wait for in-flight relays to settle."""
        pumps = {name: task for name, task in tasks.items() if name.startswith("listener-")}

        # No new relays are started once shutdown begins
        for name, task in tasks.items():
            if name not in pumps and not task.done():
                task.cancel()

        # Pumps end on their own once the listeners are stopped
        if pumps:
            _, pending = await asyncio.wait(pumps.values(), timeout=self.PUMP_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)

        discarded = 0
        while not self._inbox.empty():
            event = self._inbox.get_nowait()
            logger.debug(f"Discarding queued event {event}")
            discarded += 1
        if discarded:
            self.events_discarded += discarded
            logger.warning(f"Discarded {discarded} queued events at shutdown without relaying them")

        if self._handling_tasks:
            logger.info(f"Waiting for {len(self._handling_tasks)} in-flight relays to finish...")
            await asyncio.gather(*self._handling_tasks, return_exceptions=True)

    async def run(self) -> None:
        """Main loop: start listening and relay events until shutdown is requested."""
        logger.info("Invoice Relayer starting...")

        tasks: dict[str, asyncio.Task] = {}
        try:
            await self.start()

            tasks = {
                f"listener-{listener.chain.key}": asyncio.create_task(self._pump(listener))
                for listener in self.listeners.values()
            }
            tasks["events"] = asyncio.create_task(self._event_loop())
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())

            logger.info("Watching for events...")

            # Wait until shutdown or task failure
            while not self.shutdown_event.is_set():
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    break

        finally:
            await self.stop()
            await self._cleanup_tasks(tasks)
            await self._close_connections()
            logger.info("Invoice Relayer stopped")

    async def _close_connections(self) -> None:
        for chain_id, contract_util in self.contract_utils.items():
            try:
                await contract_util.disconnect()
            except Exception as e:
                logger.warning(f"Error closing connection to chain {chain_id}: {e}")

    def get_stats(self) -> dict[str, Any]:
        """
        Get current relayer statistics.

        Returns:
            Dictionary with current state metrics
        """
        return {
            'state': self.state.value,
            'listeners': [listener.get_status() for listener in self.listeners.values()],
            'events_received': self.events_received,
            'in_flight': len(self.processing_events),
            'duplicates_discarded': self.duplicates_discarded,
            'events_discarded': self.events_discarded,
            'dedupe_cache_sizes': {
                chain_id: len(seen) for chain_id, seen in self.seen_events.items()
            },
            'relays_completed': self.relays_completed,
            'relays_failed': self.relays_failed,
            'dispatch_successes': self.dispatch_successes,
            'dispatch_failures': self.dispatch_failures,
        }
