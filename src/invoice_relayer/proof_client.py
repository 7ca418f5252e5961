"""
Proof acquisition client for the invoice relayer.

This module turns an InvoiceBatch event into a Polymer proof: it locates the
event inside its transaction receipt, requests a proof job from the Polymer
proof API and polls the job until the proof is ready, the service reports an
error or the poll attempts run out.
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any

import httpx
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from .config import PolymerConfig
from .errors import ProofTimeoutError, ProtocolMismatchError, RelayerError, TransportError
from .models import ProofJob, ProofRecord, ProofResult, RawEvent
from .utils.encoding import decode_proof, is_invoice_batch_topic

logger = logging.getLogger(__name__)


class ProofClient:
    """Requests and polls cross-chain proofs from the Polymer proof API."""

    REQUEST_METHOD = "log_requestProof"
    QUERY_METHOD = "log_queryProof"

    def __init__(self, config: PolymerConfig, providers: Mapping[int, AsyncWeb3]) -> None:
        """
        Initialize the ProofClient.

        Args:
            config: Proof API settings
            providers: Read connections keyed by chain ID, used for receipts
        """
        self.config = config
        self.providers = providers

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        """
        Send one JSON-RPC request to the proof API.

        Args:
            method: JSON-RPC method name
            params: Positional parameters

        Returns:
            The `result` member of the response

        Raises:
            TransportError: On network failure, non-2xx status, malformed
                body or a JSON-RPC error member
        """
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        headers = {"Authorization": f"Bearer {self.config.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=self.config.request_timeout) as client:
                response = await client.post(self.config.api_url, json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{method} rejected by proof API. Status code: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} request to proof API failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"Malformed response from proof API for {method}: {e}") from e

        if not isinstance(body, dict):
            raise TransportError(f"Malformed response from proof API for {method}: {body!r}")

        if (error := body.get("error")) is not None:
            raise TransportError(f"Proof API error for {method}: {error}")

        return body.get("result")

    async def _get_transaction_local_index(self, event: RawEvent) -> tuple[int, int]:
        """
        Find the InvoiceBatch log's position among its transaction's logs.

        The proof API addresses logs by transaction-local index, not by the
        block-global log index. Only the first InvoiceBatch log of a
        transaction is addressed.

        Args:
            event: The batch event to locate

        Returns:
            Tuple of (transaction index in block, transaction-local log index)

        Raises:
            ProtocolMismatchError: If the receipt or the batch log is missing
            TransportError: If the receipt lookup fails
        """
        w3 = self.providers.get(event.source_chain_id)
        if w3 is None:
            raise TransportError(f"No RPC connection for chain {event.source_chain_id}")

        try:
            receipt = await w3.eth.get_transaction_receipt(event.transaction_hash)
        except TransactionNotFound:
            receipt = None
        except Exception as e:
            raise TransportError(
                f"Receipt lookup failed for {event.transaction_hash} "
                f"on chain {event.source_chain_id}: {e}"
            ) from e

        if not receipt:
            raise ProtocolMismatchError(f"Transaction receipt not found for {event.transaction_hash}")

        matches = [
            i for i, log in enumerate(receipt.get('logs', []))
            if log.get('topics') and is_invoice_batch_topic(log['topics'][0])
        ]
        if not matches:
            raise ProtocolMismatchError(
                f"InvoiceBatch event not found in transaction logs of {event.transaction_hash}"
            )
        if len(matches) > 1:
            logger.warning(
                f"{len(matches)} InvoiceBatch events in {event.transaction_hash}, "
                f"addressing the first at local index {matches[0]}"
            )

        return int(receipt['transactionIndex']), matches[0]

    async def request_proof(self, event: RawEvent) -> ProofJob:
        """
        Submit a proof request for the event.

        Returns:
            The accepted job
        """
        tx_index, local_log_index = await self._get_transaction_local_index(event)

        logger.info(f"Requesting proof for {event}")
        logger.info(f">  Block Number: {event.block_number}")
        logger.info(f">  Transaction Index: {tx_index}")
        logger.info(f">  Local Log Index: {local_log_index}")

        job_id = await self._rpc_call(
            self.REQUEST_METHOD,
            [event.source_chain_id, event.block_number, tx_index, local_log_index],
        )
        if job_id is None:
            raise TransportError("Proof API accepted the request but returned no job ID")

        logger.info(f"Proof requested. Job ID: {job_id}")
        return ProofJob(job_id=job_id)

    async def query_proof(self, job: ProofJob) -> bytes | None:
        """
        Query a proof job once.

        Returns:
            Raw proof bytes if ready, None if not ready yet

        Raises:
            TransportError: If the service reports an error for the job
            ProtocolMismatchError: If the proof payload cannot be decoded
        """
        result = await self._rpc_call(self.QUERY_METHOD, [job.job_id])
        if not isinstance(result, dict):
            return None

        if result.get("status") == "error":
            reason = result.get("failureReason") or result.get("error") or "unknown error"
            raise TransportError(f"Proof job {job.job_id} failed: {reason}")

        if encoded := result.get("proof"):
            return decode_proof(encoded)
        return None

    async def poll_for_proof(self, job: ProofJob, started_at: float) -> ProofRecord:
        """
        Poll a job at a fixed interval until it yields a proof.

        Polling is bounded both by the attempt ceiling and by a wall-clock
        deadline of max_poll_attempts * poll_interval seconds, so slow
        queries cannot stretch the wait.

        Args:
            job: The job to poll
            started_at: time.monotonic() when the proof was requested

        Raises:
            ProofTimeoutError: If the attempt ceiling or the deadline is reached
        """
        attempts = self.config.max_poll_attempts
        budget = attempts * self.config.poll_interval
        deadline = time.monotonic() + budget

        for attempt in range(1, attempts + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                proof = await asyncio.wait_for(self.query_proof(job), timeout=remaining)
            except asyncio.TimeoutError:
                break

            if proof is not None:
                elapsed = round(time.monotonic() - started_at, 2)
                logger.info(f"Proof received for job {job.job_id} after {attempt} polls ({elapsed}s)")
                return ProofRecord(proof=proof, elapsed_seconds=elapsed)

            if attempt < attempts:
                await asyncio.sleep(min(self.config.poll_interval, max(deadline - time.monotonic(), 0)))
        else:
            raise ProofTimeoutError(
                f"Timeout waiting for proof of job {job.job_id} after {attempts} attempts"
            )

        raise ProofTimeoutError(
            f"Timeout waiting for proof of job {job.job_id}: no proof within {budget:g}s"
        )

    async def acquire(self, event: RawEvent) -> ProofResult:
        """
        Complete flow: request a proof for the event and wait for it.

        Expected failures (missing receipt, rejected request, service error,
        timeout) are returned as a failed ProofResult rather than raised.
        """
        started_at = time.monotonic()
        try:
            job = await self.request_proof(event)
            record = await self.poll_for_proof(job, started_at)
        except RelayerError as e:
            logger.error(f"Error getting proof for {event}: {e}")
            return ProofResult.failure(e)

        return ProofResult.success(record)
