"""
SolGate - Shared Types
Data contracts passed between the verifier, ledger, broadcaster and orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from solders.pubkey import Pubkey


@dataclass(frozen=True)
class Route:
    """
    A server-declared payment requirement guarding one endpoint.

    Attributes:
        destination: Receiving wallet (for SPL routes the ATA is derived from it)
        amount: Lamports (SOL) or raw token units, as a decimal string
        mint: SPL mint address; None means the route accepts native SOL
    """
    destination: str
    amount: str
    mint: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.amount, str) or not self.amount.isdigit():
            raise ValueError(f"Route amount must be a non-negative decimal string, got {self.amount!r}")
        try:
            Pubkey.from_string(self.destination)
        except Exception as e:
            raise ValueError(f"Invalid route destination {self.destination!r}: {e}") from e
        if self.mint is not None:
            try:
                Pubkey.from_string(self.mint)
            except Exception as e:
                raise ValueError(f"Invalid route mint {self.mint!r}: {e}") from e

    @property
    def amount_units(self) -> int:
        return int(self.amount)

    @property
    def is_native(self) -> bool:
        return self.mint is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "destination": self.destination,
            "amount": self.amount,
            "mint": self.mint,
        }


@dataclass(frozen=True)
class DecodedTransfer:
    """
    A transfer extracted from a signed transaction after verification.

    For SOL routes `from_` is the paying wallet; for SPL routes it is the
    payer's source token account and `to` is the route owner wallet.
    """
    from_: str
    to: str
    amount: str
    mint: Optional[str]
    signer: str


@dataclass
class PaymentRecord:
    """A ledger row marking an in-flight payment attempt."""
    signature: str
    from_: str
    to: str
    amount: str
    mint: Optional[str]
    route: str
    status: str = "pending"
    created_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "from": self.from_,
            "to": self.to,
            "amount": self.amount,
            "mint": self.mint,
            "route": self.route,
            "status": self.status,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRecord":
        return cls(
            signature=data["signature"],
            from_=data["from"],
            to=data["to"],
            amount=str(data["amount"]),
            mint=data.get("mint"),
            route=data["route"],
            status=data.get("status", "pending"),
            created_at=int(data.get("created_at", 0)),
        )


@dataclass
class PaymentResult:
    """Result of a successful payment, handed to the protected handler."""
    signature: str
    signer: str
    destination: str
    amount: str
    mint: Optional[str]
    already_settled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "signer": self.signer,
            "destination": self.destination,
            "amount": self.amount,
            "mint": self.mint,
            "alreadySettled": self.already_settled,
        }


@dataclass
class Respond:
    """Answer the request directly with a JSON body."""
    status: int
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Proceed:
    """Payment settled; continue to the protected handler."""
    payment: PaymentResult


Outcome = Union[Respond, Proceed]


class BroadcastFailReason(Enum):
    """Why a broadcast did not end in a finalized transaction."""
    TIMEOUT = "timeout"
    FINAL_ERROR = "final_error"


@dataclass
class BroadcastOutcome:
    """Result of a broadcast-and-confirm run."""
    ok: bool
    signature: str
    reason: Optional[BroadcastFailReason] = None

    @classmethod
    def success(cls, signature: str) -> "BroadcastOutcome":
        return cls(ok=True, signature=signature)

    @classmethod
    def timeout(cls, signature: str) -> "BroadcastOutcome":
        return cls(ok=False, signature=signature, reason=BroadcastFailReason.TIMEOUT)

    @classmethod
    def final_error(cls, signature: str) -> "BroadcastOutcome":
        return cls(ok=False, signature=signature, reason=BroadcastFailReason.FINAL_ERROR)
