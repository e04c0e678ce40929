"""
SolGate - Network Access
Abstract Solana network collaborator and its JSON-RPC implementation.
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import httpx
from dotenv import load_dotenv
from solana.rpc.async_api import AsyncClient
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

load_dotenv()

logger = logging.getLogger("solgate.network")

# solana-py wraps transport failures in SolanaRpcException, node errors in RPCException
RPC_ERRORS = (RPCException, SolanaRpcException, httpx.HTTPError)


class NetworkError(Exception):
    """An RPC request failed or was rejected by the node."""


@dataclass
class SignatureStatus:
    """Confirmation state of a transaction signature."""
    err: Optional[Any] = None
    confirmation_status: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.err is None and self.confirmation_status == "finalized"


class Network(ABC):
    """
    Operations the payment engine needs from a Solana cluster.

    Implementations must not retry internally; the broadcaster owns resends.
    """

    @abstractmethod
    async def simulate(self, tx: Transaction) -> Optional[Any]:
        """Dry-run a transaction. Returns the simulation error, or None if it would succeed."""

    @abstractmethod
    async def submit(self, wire: bytes, skip_preflight: bool = True) -> str:
        """Send a serialized transaction. Raises NetworkError when the node rejects it."""

    @abstractmethod
    async def get_statuses(
        self,
        signatures: Sequence[str],
        search_history: bool = True
    ) -> List[Optional[SignatureStatus]]:
        """Look up signature statuses; None for signatures the node does not know."""

    @abstractmethod
    async def get_recent_blockhash(self) -> Hash:
        """Latest blockhash, used when building transactions."""

    @abstractmethod
    async def account_exists(self, pubkey: Pubkey) -> bool:
        """Whether an account exists on chain, used when building token payments."""

    async def close(self):
        """Release network resources."""


def _error_text(e: Exception) -> str:
    # SolanaRpcException carries its message in error_msg, str() is empty
    return getattr(e, "error_msg", None) or str(e)


def _confirmation_name(status: Optional[TransactionConfirmationStatus]) -> Optional[str]:
    if status == TransactionConfirmationStatus.Finalized:
        return "finalized"
    if status == TransactionConfirmationStatus.Confirmed:
        return "confirmed"
    if status == TransactionConfirmationStatus.Processed:
        return "processed"
    return None


class SolanaNetwork(Network):
    """
    Network backed by a Solana JSON-RPC endpoint.

    Args:
        rpc_url: RPC endpoint URL (default from SOLANA_RPC_URL env)
        client: Optional pre-built AsyncClient

    Example:
        network = SolanaNetwork("https://api.devnet.solana.com")
        statuses = await network.get_statuses([signature])
        await network.close()
    """

    def __init__(self, rpc_url: str = None, client: AsyncClient = None):
        self.rpc_url = rpc_url or os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
        self.client = client or AsyncClient(self.rpc_url)
        logger.info(f"Using Solana RPC: {self.rpc_url}")

    async def close(self):
        """Close the Solana RPC client."""
        if self.client:
            await self.client.close()

    async def simulate(self, tx: Transaction) -> Optional[Any]:
        try:
            response = await self.client.simulate_transaction(tx)
        except RPC_ERRORS as e:
            raise NetworkError(f"Simulation request failed: {_error_text(e)}") from e
        return response.value.err

    async def submit(self, wire: bytes, skip_preflight: bool = True) -> str:
        opts = TxOpts(skip_preflight=skip_preflight, max_retries=0)
        try:
            response = await self.client.send_raw_transaction(wire, opts=opts)
        except RPC_ERRORS as e:
            raise NetworkError(_error_text(e)) from e
        return str(response.value)

    async def get_statuses(
        self,
        signatures: Sequence[str],
        search_history: bool = True
    ) -> List[Optional[SignatureStatus]]:
        sigs = [Signature.from_string(s) for s in signatures]
        try:
            response = await self.client.get_signature_statuses(
                sigs,
                search_transaction_history=search_history
            )
        except RPC_ERRORS as e:
            raise NetworkError(f"Status request failed: {_error_text(e)}") from e

        statuses: List[Optional[SignatureStatus]] = []
        for status in response.value:
            if status is None:
                statuses.append(None)
                continue
            statuses.append(SignatureStatus(
                err=status.err,
                confirmation_status=_confirmation_name(status.confirmation_status)
            ))
        return statuses

    async def get_recent_blockhash(self) -> Hash:
        try:
            response = await self.client.get_latest_blockhash()
        except RPC_ERRORS as e:
            raise NetworkError(f"Blockhash request failed: {_error_text(e)}") from e
        return response.value.blockhash

    async def account_exists(self, pubkey: Pubkey) -> bool:
        try:
            response = await self.client.get_account_info(pubkey)
        except RPC_ERRORS as e:
            raise NetworkError(f"Account lookup failed: {_error_text(e)}") from e
        return response.value is not None
