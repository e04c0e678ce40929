"""
SolGate - Payment Orchestrator
Turns a request's x-payment header into a respond/proceed decision.

Flow with a ledger configured:
1. Verify the signed transaction against the route
2. Resolve any existing row for the same signature (pending window / status)
3. Resolve rows for the same payment intent (payer, payee, mint, route)
4. Insert a pending row, broadcast, then drop the row on success or failure

Without a ledger the transaction is broadcast directly and nothing protects
against the same transaction being settled by two requests.
"""

import os
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

from .broadcast import broadcast_with_retry, DEFAULT_RESEND_EVERY_MS
from .ledger import Ledger
from .network import Network, SolanaNetwork
from .types import (
    BroadcastFailReason,
    DecodedTransfer,
    Outcome,
    PaymentRecord,
    PaymentResult,
    Proceed,
    Respond,
    Route,
)
from .verifier import ValidationFailure, extract_signature, validate_for_route

load_dotenv()

logger = logging.getLogger("solgate.orchestrator")

PAYMENT_HEADER = "x-payment"
DEFAULT_PENDING_TIMEOUT_MS = 60_000


class RecordState(Enum):
    """Resolution of an existing ledger row."""
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class PaymentContext:
    """
    Collaborators and timing shared by every protected route.

    Attributes:
        network: Solana network collaborator
        ledger: Optional pending-payment ledger; None disables idempotency
        pending_timeout_ms: Pending window, also the broadcast deadline
        retry_every_ms: Delay between status polls / resends
    """
    network: Network
    ledger: Optional[Ledger] = None
    pending_timeout_ms: int = DEFAULT_PENDING_TIMEOUT_MS
    retry_every_ms: int = DEFAULT_RESEND_EVERY_MS

    @classmethod
    def from_env(
        cls,
        network: Network = None,
        ledger: Ledger = None,
        pending_timeout_ms: int = None,
        retry_every_ms: int = None
    ) -> "PaymentContext":
        """Build a context, filling unset values from the environment."""
        return cls(
            network=network or SolanaNetwork(),
            ledger=ledger,
            pending_timeout_ms=pending_timeout_ms or int(os.getenv("PENDING_TIMEOUT_MS", str(DEFAULT_PENDING_TIMEOUT_MS))),
            retry_every_ms=retry_every_ms or int(os.getenv("RETRY_EVERY_MS", str(DEFAULT_RESEND_EVERY_MS))),
        )

    async def initialize(self) -> int:
        """
        Prepare the ledger and report rows left pending by a previous run.

        Returns:
            Number of pending rows found (0 without a ledger)
        """
        if not self.ledger:
            logger.warning("No ledger configured - duplicate payments are not detected")
            return 0

        await self.ledger.init_db()
        pending = await self.ledger.get_all_pending()
        logger.info(f"Found {len(pending)} pending payments stuck in the ledger")
        return len(pending)

    async def close(self):
        await self.network.close()
        if self.ledger:
            await self.ledger.close()


def payment_required(route: Route) -> Respond:
    """402 response quoting the route."""
    return Respond(
        status=402,
        body={
            "error": "payment_required",
            "payment": route.to_dict(),
            "instructions": {
                "header": PAYMENT_HEADER,
                "description": "Retry this request with a base58-encoded signed transaction paying the above amount",
            },
        },
    )


def _proceed(signature: str, transfer: DecodedTransfer, route: Route, already_settled: bool) -> Proceed:
    return Proceed(PaymentResult(
        signature=signature,
        signer=transfer.signer,
        destination=route.destination,
        amount=route.amount,
        mint=route.mint,
        already_settled=already_settled,
    ))


def _failed(signature: str) -> Respond:
    return Respond(status=500, body={"error": "Payment transaction failed", "signature": signature})


async def check_record(record: PaymentRecord, context: PaymentContext) -> RecordState:
    """
    Resolve an existing ledger row.

    Rows inside the pending window are left alone. Older rows are checked on
    chain and removed either way.
    """
    age_ms = (time.time() - record.created_at) * 1000
    if age_ms < context.pending_timeout_ms:
        return RecordState.PENDING

    statuses = await context.network.get_statuses([record.signature], search_history=True)
    status = statuses[0] if statuses else None
    await context.ledger.remove(record.signature)

    if status is not None and status.finalized:
        logger.info(f"Expired record {record.signature[:8]}... was finalized on chain")
        return RecordState.COMPLETE

    logger.info(f"Expired record {record.signature[:8]}... not finalized, dropping it")
    return RecordState.FAILED


async def process_payment_request(
    route: Route,
    context: PaymentContext,
    payment_header: Optional[str],
    route_path: str
) -> Outcome:
    """
    Decide how to answer a request to a paid route.

    Args:
        route: Payment required by the endpoint
        context: Shared collaborators
        payment_header: Raw x-payment header value, or None
        route_path: Endpoint identity used for the duplicate-intent check

    Returns:
        Respond with a status and JSON body, or Proceed with the PaymentResult
    """
    if not payment_header:
        return payment_required(route)

    try:
        transfer = validate_for_route(payment_header, route)
        signature = extract_signature(payment_header)
    except ValidationFailure as e:
        logger.info(f"Rejected payment for {route_path}: {e}")
        return Respond(status=400, body={"error": "Invalid payment transaction"})

    if not context.ledger:
        return await _broadcast_without_ledger(route, context, payment_header, signature, transfer)

    ledger = context.ledger

    existing = await ledger.get(signature)
    if existing:
        state = await check_record(existing, context)
        if state == RecordState.PENDING:
            return Respond(status=400, body={"error": "Payment transaction is already pending"})
        if state == RecordState.COMPLETE:
            return _proceed(signature, transfer, route, already_settled=True)
        # failed: continue as if no row existed

    duplicates = await ledger.get_by_intent(transfer.from_, transfer.to, transfer.mint, route_path)
    for record in duplicates:
        if record.signature == signature:
            continue
        state = await check_record(record, context)
        if state == RecordState.COMPLETE:
            logger.info(f"Intent already settled by {record.signature[:8]}..., skipping broadcast")
            return _proceed(signature, transfer, route, already_settled=True)

    await ledger.insert_pending(
        signature, transfer.from_, transfer.to, transfer.amount, transfer.mint, route_path
    )

    try:
        outcome = await broadcast_with_retry(
            context.network,
            payment_header,
            context.pending_timeout_ms,
            context.retry_every_ms
        )
    except Exception:
        await ledger.remove(signature)
        raise

    if outcome.ok:
        await ledger.remove(signature)
        logger.info(f"Payment {signature[:8]}... settled for {route_path}")
        return _proceed(outcome.signature, transfer, route, already_settled=False)

    if outcome.reason == BroadcastFailReason.TIMEOUT:
        # row stays so a retry with the same signature resumes
        return Respond(
            status=202,
            body={
                "status": "pending",
                "signature": signature,
                "message": "Payment transaction is still pending, try again with same signature.",
            },
        )

    await ledger.remove(signature)
    logger.info(f"Payment {signature[:8]}... failed for {route_path}")
    return _failed(signature)


async def _broadcast_without_ledger(
    route: Route,
    context: PaymentContext,
    payment_header: str,
    signature: str,
    transfer: DecodedTransfer
) -> Outcome:
    outcome = await broadcast_with_retry(
        context.network,
        payment_header,
        context.pending_timeout_ms,
        context.retry_every_ms
    )

    if outcome.ok:
        return _proceed(outcome.signature, transfer, route, already_settled=False)
    if outcome.reason == BroadcastFailReason.TIMEOUT:
        return Respond(status=202, body={"status": "pending", "signature": signature})
    return _failed(signature)
