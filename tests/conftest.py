"""
Pytest configuration and shared doubles for SolGate tests.
"""
from typing import Dict, List, Optional, Sequence

import base58
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from solgate.ledger import MemoryLedger
from solgate.network import Network, NetworkError, SignatureStatus
from solgate.types import Route


class StubNetwork(Network):
    """
    In-process stand-in for a Solana cluster.

    By default simulations pass, submissions are accepted and nothing ever
    finalizes. Set `land_on_submit` to finalize a transaction when it is sent.
    """

    def __init__(self, land_on_submit: bool = False):
        self.land_on_submit = land_on_submit
        self.simulation_error = None
        self.simulate_raises = False
        self.submit_error: Optional[str] = None
        self.status_error: Optional[str] = None
        self.statuses: Dict[str, SignatureStatus] = {}
        self.existing_accounts = set()
        self.blockhash = Hash.new_unique()

        self.simulate_calls = 0
        self.submit_calls = 0
        self.status_calls = 0
        self.submitted: List[bytes] = []

    def finalize(self, signature: str):
        self.statuses[signature] = SignatureStatus(err=None, confirmation_status="finalized")

    async def simulate(self, tx):
        self.simulate_calls += 1
        if self.simulate_raises:
            raise NetworkError("simulation transport failure")
        return self.simulation_error

    async def submit(self, wire: bytes, skip_preflight: bool = True) -> str:
        self.submit_calls += 1
        self.submitted.append(wire)
        if self.submit_error:
            raise NetworkError(self.submit_error)
        signature = str(Transaction.from_bytes(wire).signatures[0])
        if self.land_on_submit:
            self.finalize(signature)
        return signature

    async def get_statuses(self, signatures: Sequence[str], search_history: bool = True):
        self.status_calls += 1
        if self.status_error:
            raise NetworkError(self.status_error)
        return [self.statuses.get(s) for s in signatures]

    async def get_recent_blockhash(self) -> Hash:
        return self.blockhash

    async def account_exists(self, pubkey: Pubkey) -> bool:
        return pubkey in self.existing_accounts


class FakeRedis:
    """Dictionary-backed subset of the redis.asyncio client API."""

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.closed = False

    async def ping(self):
        return True

    async def set(self, key, value, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def get(self, key):
        return self.values.get(key)

    async def mget(self, keys):
        return [self.values.get(k) for k in keys]

    async def delete(self, *keys):
        return sum(1 for k in keys if self.values.pop(k, None) is not None)

    async def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(members)

    async def srem(self, key, *members):
        self.sets.get(key, set()).difference_update(members)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def aclose(self):
        self.closed = True


def encode(tx: Transaction) -> str:
    return base58.b58encode(bytes(tx)).decode("ascii")


def sol_transfer_tx(payer: Keypair, to: Pubkey, lamports: int) -> Transaction:
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=to, lamports=lamports))
    return Transaction.new_signed_with_payer([ix], payer.pubkey(), [payer], Hash.new_unique())


@pytest.fixture
def payer():
    return Keypair()


@pytest.fixture
def merchant():
    return Keypair()


@pytest.fixture
def route(merchant):
    return Route(destination=str(merchant.pubkey()), amount="5000")


@pytest.fixture
def sol_payment(payer, merchant):
    """Factory for base58 signed SOL transfers to the merchant."""
    def _make(lamports: int = 5000, to: Pubkey = None, sender: Keypair = None) -> str:
        return encode(sol_transfer_tx(sender or payer, to or merchant.pubkey(), lamports))
    return _make


@pytest.fixture
def network():
    return StubNetwork()


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def encode_tx():
    return encode
