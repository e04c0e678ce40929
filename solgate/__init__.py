"""
SolGate - HTTP 402 Payment Gate for Solana

Protects API endpoints with per-request SOL or SPL token payments. Clients
send a fully signed transfer in the x-payment header; the server verifies it
against the route, records it as pending, broadcasts it and lets the request
through once it is finalized.

Usage:
    from solgate import PaymentContext, PaymentMiddleware, SQLiteLedger

    context = PaymentContext.from_env(ledger=SQLiteLedger("payments.db"))

    # Add to FastAPI
    app.add_middleware(
        PaymentMiddleware,
        context=context,
        routes={"/premium": ("MerchantWallet...", "5000")}
    )

    # At startup
    await context.initialize()
"""

# Core components
from .types import (
    Route,
    DecodedTransfer,
    PaymentRecord,
    PaymentResult,
    Respond,
    Proceed,
    BroadcastOutcome,
    BroadcastFailReason,
)
from .verifier import (
    PaymentError,
    ValidationFailure,
    InvalidArtifact,
    validate_native_transfer,
    validate_token_transfer,
    validate_for_route,
    extract_signature,
)
from .broadcast import broadcast_with_retry
from .orchestrator import PaymentContext, process_payment_request

# Collaborators
from .network import Network, SolanaNetwork, SignatureStatus, NetworkError
from .ledger import Ledger, MemoryLedger, SQLiteLedger, RedisLedger

# Adapters
from .middleware import PaymentMiddleware, payment_route
from .client import PaymentClient, PriorityOptions, PaymentQuoteError, build_payment_transaction

__version__ = "0.1.0"

__all__ = [
    # Types
    "Route",
    "DecodedTransfer",
    "PaymentRecord",
    "PaymentResult",
    "Respond",
    "Proceed",
    "BroadcastOutcome",
    "BroadcastFailReason",

    # Verification
    "PaymentError",
    "ValidationFailure",
    "InvalidArtifact",
    "validate_native_transfer",
    "validate_token_transfer",
    "validate_for_route",
    "extract_signature",

    # Settlement
    "broadcast_with_retry",
    "PaymentContext",
    "process_payment_request",

    # Collaborators
    "Network",
    "SolanaNetwork",
    "SignatureStatus",
    "NetworkError",
    "Ledger",
    "MemoryLedger",
    "SQLiteLedger",
    "RedisLedger",

    # Adapters
    "PaymentMiddleware",
    "payment_route",
    "PaymentClient",
    "PriorityOptions",
    "PaymentQuoteError",
    "build_payment_transaction",
]
