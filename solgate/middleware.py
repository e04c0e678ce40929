"""
SolGate - FastAPI Middleware
Enforces HTTP 402 Payment Required on configured paths.
"""

import logging
from typing import Callable, Dict, Optional, Tuple, Union

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .orchestrator import PAYMENT_HEADER, PaymentContext, process_payment_request
from .types import Proceed, Route

logger = logging.getLogger("solgate.middleware")

RouteEntry = Union[Route, Tuple[str, str], Tuple[str, str, Optional[str]]]


def payment_route(
    destination_or_route: Union[Route, str],
    amount: Optional[str] = None,
    mint: Optional[str] = None
) -> Route:
    """
    Build a Route from either a Route or positional values.

    Example:
        payment_route("Fj9...wallet", "1000000")
        payment_route(Route(destination="Fj9...", amount="5", mint="EPj..."))
    """
    if isinstance(destination_or_route, Route):
        return destination_or_route
    if amount is None:
        raise ValueError("amount is required when the destination is given positionally")
    return Route(destination=destination_or_route, amount=str(amount), mint=mint)


def _coerce_route(entry: RouteEntry) -> Route:
    if isinstance(entry, Route):
        return entry
    return payment_route(*entry)


class PaymentMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware that gates paths behind Solana payments.

    Requests to a configured path must carry a signed transaction in the
    x-payment header. Once it settles, the PaymentResult is available to
    the handler as `request.state.payment`.

    Args:
        app: FastAPI application instance
        context: PaymentContext shared by all routes
        routes: Mapping of URL path to Route (or (destination, amount[, mint]))

    Example:
        context = PaymentContext.from_env(ledger=SQLiteLedger("payments.db"))

        app.add_middleware(
            PaymentMiddleware,
            context=context,
            routes={"/premium": ("Fj9...wallet", "5000")}
        )

        @app.post("/premium")
        async def premium(request: Request):
            return {"paid_by": request.state.payment.signer}
    """

    def __init__(
        self,
        app,
        context: PaymentContext,
        routes: Dict[str, RouteEntry]
    ):
        super().__init__(app)
        self.context = context
        self.routes = {path: _coerce_route(entry) for path, entry in routes.items()}

        logger.info(f"Payment middleware initialized for {len(self.routes)} route(s):")
        for path, route in self.routes.items():
            logger.info(f"  - {path}: {route.amount} {route.mint or 'lamports'} -> {route.destination[:8]}...")

    async def dispatch(self, request: Request, call_next: Callable):
        """Process each request through the payment flow."""
        route = self.routes.get(request.url.path)
        if route is None:
            return await call_next(request)

        try:
            outcome = await process_payment_request(
                route,
                self.context,
                payment_header=request.headers.get(PAYMENT_HEADER),
                route_path=request.url.path
            )
        except Exception as e:
            logger.error(f"Payment processing error: {e}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"error": "Internal payment processing error"}
            )

        if isinstance(outcome, Proceed):
            request.state.payment = outcome.payment
            return await call_next(request)

        return JSONResponse(status_code=outcome.status, content=outcome.body)
