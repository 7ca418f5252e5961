import json
import logging
from functools import cache
from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.contract import AsyncContract
from web3.middleware import SignAndSendRawMiddlewareBuilder
from web3.providers import WebSocketProvider

logger = logging.getLogger(__name__)

CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"


@cache
def load_contract_abi(contract_name: str) -> list:
    """Fetches ABI of the given contract from the packaged contracts folder"""
    contract_path = (CONTRACTS_DIR / f"{contract_name}.json").resolve()

    with contract_path.open() as file:
        contract_data = json.load(file)

    return contract_data["abi"]


class ContractUtility:
    """
    Async Web3 connection to one chain, optionally with a signing account.

    Can be used in two modes:
    1. Signing mode: initialized with a private key, transactions sent through
       `transact` are signed locally and submitted as raw transactions
    2. Read-only mode: initialized without a secret, for log and receipt queries
    """

    def __init__(self, rpc_url: str, secret: str = ""):
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: HTTP(S) or WS(S) RPC endpoint of the chain
            secret: Private key for transactions (optional for read-only mode)
        """
        self.rpc_url = rpc_url
        self.account: LocalAccount | None = Account.from_key(secret) if secret else None
        self.w3 = self.setup_web3_middleware()

    def setup_web3_middleware(self) -> AsyncWeb3:
        provider = (
            WebSocketProvider(self.rpc_url)
            if self.rpc_url.startswith(("ws:", "wss:"))
            else AsyncHTTPProvider(self.rpc_url)
        )
        w3 = AsyncWeb3(provider)
        if self.account:
            w3.middleware_onion.add(SignAndSendRawMiddlewareBuilder.build(self.account))
            w3.eth.default_account = self.account.address
        return w3

    @property
    def address(self) -> str | None:
        return self.account.address if self.account else None

    async def connect(self) -> None:
        """Open the connection for persistent (WebSocket) providers; no-op for HTTP."""
        provider = self.w3.provider
        if isinstance(provider, WebSocketProvider) and not await provider.is_connected():
            logger.debug(f"Connecting to {self.rpc_url}")
            await provider.connect()

    async def disconnect(self) -> None:
        provider = self.w3.provider
        if isinstance(provider, WebSocketProvider):
            await provider.disconnect()

    def get_contract_abi(self, contract_name: str) -> list:
        return load_contract_abi(contract_name)

    def contract(self, address: str, contract_name: str = "InvoiceIDBatcher") -> AsyncContract:
        """Bind a contract instance at the given address."""
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=self.get_contract_abi(contract_name),
        )
