#!/usr/bin/env python3
"""Tests for the InvoiceRelayer orchestrator."""

import asyncio
import base64
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from hexbytes import HexBytes

from invoice_relayer.chain_listener import ChainListener
from invoice_relayer.dispatcher import ProofDispatcher
from invoice_relayer.errors import ConfigurationError, ProofTimeoutError
from invoice_relayer.models import (
    DispatchOutcome,
    DispatchStatus,
    FanOutReport,
    ProofRecord,
    ProofResult,
)
from invoice_relayer.proof_client import ProofClient
from invoice_relayer.relayer import InvoiceRelayer, RelayerState
from invoice_relayer.utils.encoding import INVOICE_BATCH_TOPIC

PROOF = b"\x42" * 48
BASE, OPTIMISM, ARBITRUM = 84532, 11155420, 421614


def make_report(source: int = BASE) -> FanOutReport:
    return FanOutReport(
        source_chain_id=source,
        outcomes=(
            DispatchOutcome(OPTIMISM, "Optimism Sepolia", DispatchStatus.SUCCESS, "0x" + "0b" * 32),
            DispatchOutcome(ARBITRUM, "Arbitrum Sepolia", DispatchStatus.FAILURE, "Failed to update Arbitrum Sepolia: reverted"),
        ),
    )


class FakeListener:
    """Listener double that emits preloaded events and ends its stream on stop."""

    def __init__(self, chain, contract_util, seen=None, polling_interval=2.0):
        self.chain = chain
        self.pending = []
        self.start = AsyncMock()
        self._stopped = asyncio.Event()

    async def stop(self):
        self._stopped.set()

    def get_status(self):
        return {"chain": self.chain.name, "is_listening": not self._stopped.is_set()}

    async def events(self):
        for event in self.pending:
            yield event
        await self._stopped.wait()


@pytest.fixture
def proof_client():
    mock = MagicMock()
    mock.acquire = AsyncMock(
        return_value=ProofResult.success(ProofRecord(proof=PROOF, elapsed_seconds=1.5))
    )
    return mock


@pytest.fixture
def dispatcher():
    mock = MagicMock()
    mock.fan_out = AsyncMock(return_value=make_report())
    return mock


@pytest.fixture
def relayer(relay_config, proof_client, dispatcher):
    return InvoiceRelayer(relay_config, proof_client=proof_client, dispatcher=dispatcher)


class TestLifecycle:
    """Tests for init, start and stop."""

    def test_init_builds_listener_per_chain(self, relayer):
        relayer.init()

        assert relayer.state is RelayerState.INITIALIZED
        assert set(relayer.listeners) == {BASE, OPTIMISM, ARBITRUM}
        assert all(isinstance(listener, ChainListener) for listener in relayer.listeners.values())
        assert set(relayer.seen_events) == {BASE, OPTIMISM, ARBITRUM}

        relayer.seen_events[BASE].add((BASE, "0x" + "ab" * 32, 0))
        assert relayer.get_stats()["dedupe_cache_sizes"] == {BASE: 1, OPTIMISM: 0, ARBITRUM: 0}

    def test_init_skips_failing_chain(self, relayer):
        listener = MagicMock()
        with patch(
            'invoice_relayer.relayer.ChainListener',
            side_effect=[ConfigurationError("no event"), listener, listener],
        ):
            relayer.init()

        assert set(relayer.listeners) == {OPTIMISM, ARBITRUM}

    def test_init_without_any_listener(self, relayer):
        with patch('invoice_relayer.relayer.ChainListener', side_effect=ConfigurationError("no event")):
            with pytest.raises(ConfigurationError, match="No chains configured"):
                relayer.init()

        assert relayer.state is RelayerState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, relayer):
        with patch('invoice_relayer.relayer.ChainListener', FakeListener):
            await relayer.start()
            await relayer.start()

        assert relayer.state is RelayerState.RUNNING
        for listener in relayer.listeners.values():
            listener.start.assert_awaited_once()

        await relayer.stop()
        await relayer.stop()
        assert relayer.state is RelayerState.STOPPED

    @pytest.mark.asyncio
    async def test_start_drops_failing_listener(self, relayer):
        with patch('invoice_relayer.relayer.ChainListener', FakeListener):
            relayer.init()
        relayer.listeners[OPTIMISM].start.side_effect = ConnectionError("rpc unreachable")

        await relayer.start()

        assert set(relayer.listeners) == {BASE, ARBITRUM}
        assert relayer.state is RelayerState.RUNNING

    @pytest.mark.asyncio
    async def test_start_fails_when_no_listener_starts(self, relayer):
        with patch('invoice_relayer.relayer.ChainListener', FakeListener):
            relayer.init()
        for listener in relayer.listeners.values():
            listener.start.side_effect = ConnectionError("rpc unreachable")

        with pytest.raises(ConfigurationError, match="No chain could be listened to"):
            await relayer.start()

    def test_from_env(self):
        env = {
            "ACTIVATED_CHAINS": "base-sepolia,arbitrum-sepolia",
            "BASE_SEPOLIA_RPC": "https://base.rpc.test",
            "BASE_SEPOLIA_INVOICEBATCHER_ADDRESS": "0x" + "a0" * 20,
            "POLYMER_PROVER_BASE_TESTNET_CONTRACT_ADDRESS": "0x" + "a1" * 20,
            "ARBITRUM_SEPOLIA_RPC": "https://arbitrum.rpc.test",
            "ARBITRUM_SEPOLIA_INVOICEBATCHER_ADDRESS": "0x" + "c0" * 20,
            "POLYMER_PROVER_ARBITRUM_TESTNET_CONTRACT_ADDRESS": "0x" + "c1" * 20,
            "PRIVATE_KEY": "0x" + "11" * 32,
            "POLYMER_API_KEY": "test-api-key",
        }
        with patch.dict(os.environ, env, clear=True):
            relayer = InvoiceRelayer.from_env()

        assert set(relayer.contract_utils) == {BASE, ARBITRUM}
        assert relayer.wallet_address is not None
        assert relayer.proof_client.providers[BASE] is relayer.contract_utils[BASE].w3


class TestHandleEvent:
    """Tests for relaying a single event."""

    @pytest.mark.asyncio
    async def test_relays_proof_to_other_chains(self, relayer, proof_client, dispatcher, make_event):
        event = make_event()

        report = await relayer.handle_event(event)

        assert report == make_report()
        proof_client.acquire.assert_awaited_once_with(event)
        dispatcher.fan_out.assert_awaited_once_with(PROOF, BASE)
        assert relayer.processing_events == {}

        stats = relayer.get_stats()
        assert stats['relays_completed'] == 1
        assert stats['dispatch_successes'] == 1
        assert stats['dispatch_failures'] == 1

    @pytest.mark.asyncio
    async def test_proof_failure_skips_dispatch(self, relayer, proof_client, dispatcher, make_event):
        proof_client.acquire.return_value = ProofResult.failure(ProofTimeoutError("timed out"))

        assert await relayer.handle_event(make_event()) is None

        dispatcher.fan_out.assert_not_awaited()
        assert relayer.relays_failed == 1
        assert relayer.processing_events == {}

    @pytest.mark.asyncio
    async def test_at_most_one_in_flight_per_transaction(self, relayer, proof_client, make_event):
        release = asyncio.Event()
        result = proof_client.acquire.return_value

        async def slow_acquire(event):
            await release.wait()
            return result

        proof_client.acquire.side_effect = slow_acquire

        first = asyncio.create_task(relayer.handle_event(make_event(log_index=0)))
        await asyncio.sleep(0)
        assert relayer.get_stats()['in_flight'] == 1

        # Same transaction, different log: still a duplicate while in flight
        assert await relayer.handle_event(make_event(log_index=1)) is None
        assert relayer.duplicates_discarded == 1

        release.set()
        assert await first is not None
        assert proof_client.acquire.await_count == 1

        # Ticket released, the same event is processed afresh
        assert await relayer.handle_event(make_event()) is not None
        assert proof_client.acquire.await_count == 2

    @pytest.mark.asyncio
    async def test_other_transactions_run_concurrently(self, relayer, proof_client, make_event):
        release = asyncio.Event()
        result = proof_client.acquire.return_value

        async def slow_acquire(event):
            await release.wait()
            return result

        proof_client.acquire.side_effect = slow_acquire

        tasks = [
            asyncio.create_task(relayer.handle_event(make_event(tx_hash="0x" + "01" * 32))),
            asyncio.create_task(relayer.handle_event(make_event(tx_hash="0x" + "02" * 32))),
            asyncio.create_task(relayer.handle_event(make_event(chain_id=OPTIMISM))),
        ]
        await asyncio.sleep(0)
        assert relayer.get_stats()['in_flight'] == 3

        release.set()
        reports = await asyncio.gather(*tasks)
        assert all(report is not None for report in reports)

    @pytest.mark.asyncio
    async def test_ticket_released_after_unexpected_error(self, relayer, dispatcher, make_event):
        dispatcher.fan_out.side_effect = RuntimeError("boom")

        assert await relayer.handle_event(make_event()) is None
        assert relayer.processing_events == {}
        assert relayer.relays_failed == 1

        dispatcher.fan_out.side_effect = None
        assert await relayer.handle_event(make_event()) is not None


class TestRun:
    """Tests for the main loop."""

    @pytest.mark.asyncio
    async def test_run_relays_events_until_stopped(self, relayer, dispatcher, make_event):
        with patch('invoice_relayer.relayer.ChainListener', FakeListener):
            relayer.init()
        relayer.listeners[BASE].pending = [make_event()]

        run_task = asyncio.create_task(relayer.run())

        async def wait_for_dispatch():
            while dispatcher.fan_out.await_count == 0:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(wait_for_dispatch(), timeout=2)
        relayer.request_stop()
        await asyncio.wait_for(run_task, timeout=2)

        assert relayer.state is RelayerState.STOPPED
        assert relayer.events_received == 1
        assert len(relayer.get_stats()["listeners"]) == 3
        assert relayer.relays_completed == 1
        dispatcher.fan_out.assert_awaited_once_with(PROOF, BASE)

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight_relays(self, relayer, proof_client, dispatcher, make_event):
        release = asyncio.Event()
        result = proof_client.acquire.return_value

        async def slow_acquire(event):
            await release.wait()
            return result

        proof_client.acquire.side_effect = slow_acquire

        with patch('invoice_relayer.relayer.ChainListener', FakeListener):
            relayer.init()
        relayer.listeners[OPTIMISM].pending = [make_event(chain_id=OPTIMISM)]

        run_task = asyncio.create_task(relayer.run())

        async def wait_for_in_flight():
            while not relayer.processing_events:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(wait_for_in_flight(), timeout=2)
        relayer.request_stop()
        await asyncio.sleep(0.05)
        assert not run_task.done()

        release.set()
        await asyncio.wait_for(run_task, timeout=2)

        assert relayer.relays_completed == 1
        dispatcher.fan_out.assert_awaited_once_with(PROOF, OPTIMISM)

    @pytest.mark.asyncio
    async def test_queued_events_are_reported_at_shutdown(self, relayer, chains, make_event, caplog):
        listener = FakeListener(chains[0], None)
        listener.pending = [make_event(log_index=0), make_event(log_index=1)]
        await listener.stop()

        tasks = {
            "listener-base-sepolia": asyncio.create_task(relayer._pump(listener)),
            "events": asyncio.create_task(relayer._event_loop()),
        }
        await relayer._cleanup_tasks(tasks)

        assert relayer.events_received == 0
        assert relayer.get_stats()['events_discarded'] == 2
        assert "Discarded 2 queued events" in caplog.text


def rpc_response(result) -> MagicMock:
    response = MagicMock()
    response.json = MagicMock(return_value={"jsonrpc": "2.0", "id": 1, "result": result})
    response.raise_for_status = MagicMock()
    return response


class TestRelayScenario:
    """A relay through the real proof client and dispatcher, with the network mocked."""

    @pytest.mark.asyncio
    async def test_partial_fan_out_then_reprocess(self, relay_config, make_event):
        source_w3 = MagicMock()
        source_w3.eth.get_transaction_receipt = AsyncMock(
            return_value={'transactionIndex': 3, 'logs': [{'topics': [INVOICE_BATCH_TOPIC]}]}
        )
        proof_client = ProofClient(relay_config.polymer, {BASE: source_w3})

        contract_utils = {OPTIMISM: MagicMock(), ARBITRUM: MagicMock()}
        for contract_util in contract_utils.values():
            contract_util.w3.eth.wait_for_transaction_receipt = AsyncMock(
                return_value={'status': 1, 'blockNumber': 7}
            )
        optimism_send = AsyncMock(return_value=HexBytes(b"\x0b" * 32))
        arbitrum_send = AsyncMock(side_effect=ConnectionError("connection reset by peer"))
        contract_utils[OPTIMISM].contract.return_value.functions.invoicesFromSource.return_value.transact = optimism_send
        contract_utils[ARBITRUM].contract.return_value.functions.invoicesFromSource.return_value.transact = arbitrum_send

        relayer = InvoiceRelayer(
            relay_config,
            proof_client=proof_client,
            dispatcher=ProofDispatcher(relay_config, contract_utils),
        )

        ready = {"status": "complete", "proof": base64.b64encode(PROOF).decode()}
        pending = {"status": "pending"}
        event = make_event(block_number=100)

        with patch('invoice_relayer.proof_client.httpx.AsyncClient') as mock_client_class, \
                patch('invoice_relayer.proof_client.asyncio.sleep', new_callable=AsyncMock) as mock_sleep:
            mock_http = AsyncMock()
            mock_client_class.return_value.__aenter__.return_value = mock_http
            mock_http.post = AsyncMock(side_effect=[
                # First relay: proof ready on the third query
                rpc_response(11), rpc_response(pending), rpc_response(pending), rpc_response(ready),
                # Second relay of the same transaction
                rpc_response(12), rpc_response(ready),
            ])

            report = await relayer.handle_event(event)

            assert mock_http.post.call_args_list[0][1]['json']['params'] == [BASE, 100, 3, 0]
            assert mock_http.post.await_count == 4
            assert mock_sleep.await_count == 2

            outcomes = report.by_chain()
            assert set(outcomes) == {OPTIMISM, ARBITRUM}
            assert outcomes[OPTIMISM].succeeded
            assert outcomes[OPTIMISM].detail == "0x" + "0b" * 32
            assert not outcomes[ARBITRUM].succeeded
            assert outcomes[ARBITRUM].detail == "Failed to update Arbitrum Sepolia: connection reset by peer"
            optimism_send.assert_awaited_once_with({'gas': 500_000})
            contract_utils[OPTIMISM].contract.return_value.functions.invoicesFromSource.assert_called_with(PROOF)

            # Ticket released: the same transaction is relayed again
            assert relayer.processing_events == {}
            second = await relayer.handle_event(event)

        assert second is not None
        assert mock_http.post.await_count == 6
        assert optimism_send.await_count == 2
        assert arbitrum_send.await_count == 2

        stats = relayer.get_stats()
        assert stats['relays_completed'] == 2
        assert stats['dispatch_successes'] == 2
        assert stats['dispatch_failures'] == 2
        assert stats['in_flight'] == 0
