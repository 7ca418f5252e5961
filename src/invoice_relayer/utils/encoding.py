"""
Encoding helpers for values coming back from RPC providers and the proof API.

Providers hand back hashes and topics as HexBytes, raw bytes or hex strings
depending on transport; everything in the relayer works on 0x-prefixed hex
strings for hashes and raw bytes for payloads.
"""

import base64
import binascii
from typing import Any, Union

from hexbytes import HexBytes
from web3 import Web3

from ..errors import ProtocolMismatchError

# keccak256("InvoiceBatch(address,bytes32[])")
INVOICE_BATCH_SIGNATURE = "InvoiceBatch(address,bytes32[])"
INVOICE_BATCH_TOPIC: HexBytes = Web3.keccak(text=INVOICE_BATCH_SIGNATURE)


def to_bytes_safe(value: Union[HexBytes, bytes, str]) -> bytes:
    """
    Convert HexBytes, bytes or a hex string to bytes.

    Args:
        value: Value to convert

    Returns:
        Bytes representation
    """
    if isinstance(value, bytes):
        return bytes(value)
    return Web3.to_bytes(hexstr=value)


def to_hex_str(value: Any) -> str:
    """Normalize a hash-like value to a lowercase 0x-prefixed hex string."""
    match value:
        case bytes():
            return '0x' + bytes(value).hex()
        case str() if value.startswith('0x'):
            return value.lower()
        case str():
            return '0x' + value.lower()
        case _:
            raise TypeError(f"Unexpected hash type: {type(value)}")


def is_invoice_batch_topic(topic: Any) -> bool:
    """Whether a log's first topic is the InvoiceBatch event signature."""
    try:
        return HexBytes(topic) == INVOICE_BATCH_TOPIC
    except (TypeError, ValueError):
        return False


def decode_proof(encoded: str) -> bytes:
    """
    Decode a base64 proof returned by the proof API into raw bytes.

    Raises:
        ProtocolMismatchError: If the payload is not valid base64
    """
    try:
        proof = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise ProtocolMismatchError(f"Proof payload is not valid base64: {e}") from e
    if not proof:
        raise ProtocolMismatchError("Proof payload is empty")
    return proof
