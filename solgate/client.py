"""
SolGate - Paying HTTP Client
Answers a 402 quote by signing a transfer and retrying with x-payment.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import base58
import httpx
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferParams as TokenTransferParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer as token_transfer,
)

from .network import Network
from .orchestrator import PAYMENT_HEADER

logger = logging.getLogger("solgate.client")


class PaymentQuoteError(Exception):
    """The server answered 402 without a usable payment quote."""


@dataclass
class PriorityOptions:
    """Caller-chosen compute budget for the payment transaction."""
    compute_units: Optional[int] = None
    priority_micro_lamports: Optional[int] = None


async def build_payment_transaction(
    network: Network,
    payer: Keypair,
    destination: Pubkey,
    amount: str,
    mint: Optional[Pubkey] = None,
    priority: Optional[PriorityOptions] = None
) -> Transaction:
    """
    Build and sign a SOL or SPL transfer paying `destination`.

    For SPL payments missing associated token accounts are created in the
    same transaction, paid for by the payer.
    """
    instructions: List[Instruction] = []

    if priority and priority.compute_units and priority.compute_units > 0:
        instructions.append(set_compute_unit_limit(int(priority.compute_units)))
    if priority and priority.priority_micro_lamports and priority.priority_micro_lamports > 0:
        instructions.append(set_compute_unit_price(int(priority.priority_micro_lamports)))

    if mint is None:
        instructions.append(transfer(TransferParams(
            from_pubkey=payer.pubkey(),
            to_pubkey=destination,
            lamports=int(amount)
        )))
    else:
        source_ata = get_associated_token_address(payer.pubkey(), mint)
        dest_ata = get_associated_token_address(destination, mint)

        if not await network.account_exists(source_ata):
            instructions.append(create_associated_token_account(payer.pubkey(), payer.pubkey(), mint))
        if not await network.account_exists(dest_ata):
            instructions.append(create_associated_token_account(payer.pubkey(), destination, mint))

        instructions.append(token_transfer(TokenTransferParams(
            program_id=TOKEN_PROGRAM_ID,
            source=source_ata,
            dest=dest_ata,
            owner=payer.pubkey(),
            amount=int(amount)
        )))

    blockhash = await network.get_recent_blockhash()
    return Transaction.new_signed_with_payer(instructions, payer.pubkey(), [payer], blockhash)


class PaymentClient:
    """
    HTTP client that pays for 402-protected endpoints.

    Args:
        network: Network used for blockhashes and account lookups
        keypair: Payer keypair signing the transfers
        headers: Default headers sent with every request
        timeout: HTTP timeout in seconds

    Example:
        client = PaymentClient(SolanaNetwork(), Keypair())
        response = await client.post("https://api.example.com/buy", json={"sku": 1})
        await client.close()
    """

    def __init__(
        self,
        network: Network,
        keypair: Keypair,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 90.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.network = network
        self.keypair = keypair
        self.default_headers = headers or {}
        self.timeout = timeout
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _parse_quote(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise PaymentQuoteError("402 did not contain valid JSON") from e

        payment = payload.get("payment") if isinstance(payload, dict) else None
        if not payment or not payment.get("destination") or not payment.get("amount"):
            raise PaymentQuoteError("Invalid 402 payment quote")
        return payment

    async def request(
        self,
        method: str,
        url: str,
        priority: Optional[PriorityOptions] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Send a request, paying once if the server answers 402.

        Extra keyword arguments are passed to httpx (json, content, params...).
        """
        client = await self._get_client()
        headers = {**self.default_headers, **(kwargs.pop("headers", None) or {})}

        first = await client.request(method, url, headers=headers, **kwargs)
        if first.status_code != 402:
            return first

        quote = self._parse_quote(first)
        mint = Pubkey.from_string(quote["mint"]) if quote.get("mint") else None

        tx = await build_payment_transaction(
            self.network,
            self.keypair,
            Pubkey.from_string(quote["destination"]),
            str(quote["amount"]),
            mint,
            priority
        )
        encoded = base58.b58encode(bytes(tx)).decode("ascii")
        logger.info(f"Paying {quote['amount']} {quote.get('mint') or 'lamports'} for {method} {url}")

        return await client.request(
            method,
            url,
            headers={**headers, PAYMENT_HEADER: encoded},
            **kwargs
        )

    async def get(self, url: str, priority: Optional[PriorityOptions] = None, **kwargs) -> httpx.Response:
        return await self.request("GET", url, priority, **kwargs)

    async def post(self, url: str, priority: Optional[PriorityOptions] = None, **kwargs) -> httpx.Response:
        return await self.request("POST", url, priority, **kwargs)

    async def put(self, url: str, priority: Optional[PriorityOptions] = None, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, priority, **kwargs)

    async def patch(self, url: str, priority: Optional[PriorityOptions] = None, **kwargs) -> httpx.Response:
        return await self.request("PATCH", url, priority, **kwargs)

    async def delete(self, url: str, priority: Optional[PriorityOptions] = None, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, priority, **kwargs)
