"""
SolGate Example Server
A FastAPI app with one endpoint paid per request in SOL or an SPL token.

Configuration (env / .env):
    MERCHANT_WALLET   - receiving wallet
    PRICE_AMOUNT      - lamports or raw token units per request
    PAYMENT_MINT      - optional SPL mint; unset means SOL
    LEDGER_BACKEND    - sqlite (default), redis, memory or none
    SOLANA_RPC_URL, PENDING_TIMEOUT_MS, RETRY_EVERY_MS, LEDGER_DB_PATH, REDIS_URL
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from solgate import (
    Ledger,
    MemoryLedger,
    PaymentContext,
    PaymentMiddleware,
    RedisLedger,
    Route,
    SQLiteLedger,
)

# Load environment from root directory
ROOT_DIR = Path(__file__).parent.parent.parent
load_dotenv(ROOT_DIR / ".env")

# Configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
MERCHANT_WALLET = os.getenv("MERCHANT_WALLET", "").strip()
PRICE_AMOUNT = os.getenv("PRICE_AMOUNT", "5000")
PAYMENT_MINT = os.getenv("PAYMENT_MINT", "").strip() or None
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "sqlite").lower()
LOG_DIR = Path(os.getenv("LOG_DIR", str(ROOT_DIR / "logs")))


# === LOGGING ===
def setup_logging():
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    # Clear existing handlers
    root_logger.handlers = []

    file_handler = RotatingFileHandler(
        LOG_DIR / "solgate.log",
        maxBytes=10_000_000,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return logging.getLogger("solgate.site")

logger = setup_logging()


def build_ledger() -> Optional[Ledger]:
    if LEDGER_BACKEND == "none":
        return None
    if LEDGER_BACKEND == "memory":
        return MemoryLedger()
    if LEDGER_BACKEND == "redis":
        return RedisLedger()
    return SQLiteLedger()


def build_route() -> Optional[Route]:
    try:
        return Route(destination=MERCHANT_WALLET, amount=PRICE_AMOUNT, mint=PAYMENT_MINT)
    except ValueError as e:
        logger.error(f"Paid route disabled: {e}")
        return None


# === SDK COMPONENTS ===
payment_context = PaymentContext.from_env(ledger=build_ledger())
premium_route = build_route()
paid_routes = {"/premium": premium_route} if premium_route else {}


# === LIFESPAN ===
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await payment_context.initialize()

    if not premium_route:
        logger.warning("=" * 50)
        logger.warning("MERCHANT_WALLET not configured!")
        logger.warning("=" * 50)
    else:
        logger.info(f"Price: {premium_route.amount} {premium_route.mint or 'lamports'}/request")

    logger.info(f"SolGate example starting on {HOST}:{PORT} (ledger: {LEDGER_BACKEND})")

    yield

    # Shutdown
    await payment_context.close()
    logger.info("Server shutdown complete")


# === APP ===
app = FastAPI(
    title="SolGate Example",
    description="HTTP 402 Payment Gate for Solana",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(
    PaymentMiddleware,
    context=payment_context,
    routes=paid_routes
)


# === PUBLIC ROUTES ===

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "0.1.0",
        "merchant_configured": premium_route is not None,
        "ledger": LEDGER_BACKEND,
    }


@app.get("/pending")
async def pending_payments():
    """List payments currently in flight."""
    if not payment_context.ledger:
        return {"pending": [], "count": 0}

    records = await payment_context.ledger.get_all_pending()
    return {"pending": [r.to_dict() for r in records], "count": len(records)}


# === PAID ROUTES ===

@app.post("/premium")
async def premium(request: Request):
    """PAID ENDPOINT - returns the settled payment."""
    payment = getattr(request.state, "payment", None)
    if payment is None:
        raise HTTPException(status_code=503, detail="Paid route not configured")

    logger.info(f"Served premium | Payer: {payment.signer[:8]}... | Settled before: {payment.already_settled}")
    return {"message": "Thanks for paying", "payment": payment.to_dict()}


# === ENTRY POINT ===
if __name__ == "__main__":
    uvicorn.run(
        "solgate.site.main:app",
        host=HOST,
        port=PORT,
        reload=True
    )
