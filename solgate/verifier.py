"""
SolGate - Route Verifier
Decodes a client-signed transfer and checks it against a payment route.

The signed transaction is the only input trusted here. Every signature slot is
verified against the full serialized message before any instruction is read,
so a signature lifted from one transaction cannot vouch for another payload.
"""

import struct
import logging
from typing import List, Set

import base58
from nacl.signing import VerifyKey
from nacl.exceptions import BadSignatureError
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import SanitizeError, Transaction
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from .types import Route, DecodedTransfer

logger = logging.getLogger("solgate.verifier")


TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# System program: u32 LE instruction index, u64 LE lamports
SYSTEM_TRANSFER_INDEX = 2
SYSTEM_TRANSFER_LAYOUT = struct.Struct("<IQ")

# SPL token opcodes: Transfer (dest at account 1), TransferChecked (dest at account 2)
TOKEN_TRANSFER = 3
TOKEN_TRANSFER_CHECKED = 12


class PaymentError(Exception):
    """Base class for payment errors."""


class ValidationFailure(PaymentError):
    """The transaction does not carry a valid payment for the route."""


class InvalidArtifact(ValidationFailure):
    """The payment header is missing, unparsable or unsigned."""


def decode_artifact(artifact: str) -> Transaction:
    """Decode a base58 wire-format transaction."""
    if not artifact or not artifact.strip():
        raise InvalidArtifact("Empty payment artifact")

    try:
        wire = base58.b58decode(artifact.strip())
    except ValueError as e:
        raise InvalidArtifact(f"Payment artifact is not base58: {e}") from e

    try:
        tx = Transaction.from_bytes(wire)
    except Exception as e:
        raise InvalidArtifact(f"Payment artifact is not a transaction: {e}") from e

    # from_bytes does not bounds-check instruction account indices
    try:
        tx.sanitize()
    except SanitizeError as e:
        raise InvalidArtifact(f"Malformed transaction message: {e}") from e
    return tx


def primary_signature(tx: Transaction) -> str:
    """Return the fee payer signature, which identifies the transaction."""
    if not tx.signatures or tx.signatures[0] == Signature.default():
        raise InvalidArtifact("Transaction not signed")
    return str(tx.signatures[0])


def extract_signature(artifact: str) -> str:
    """Decode an artifact and return its primary signature."""
    return primary_signature(decode_artifact(artifact))


def _declared_signers(tx: Transaction) -> List[Pubkey]:
    num_signers = tx.message.header.num_required_signatures
    return list(tx.message.account_keys[:num_signers])


def verify_signatures(tx: Transaction) -> None:
    """
    Verify every signature slot against the full message bytes.

    Raises:
        ValidationFailure: on a missing, forged or misplaced signature
    """
    signers = _declared_signers(tx)
    if not signers or len(tx.signatures) != len(signers):
        raise ValidationFailure(
            f"Expected {len(signers)} signatures, transaction carries {len(tx.signatures)}"
        )

    message = tx.message_data()
    for pubkey, signature in zip(signers, tx.signatures):
        try:
            VerifyKey(bytes(pubkey)).verify(message, bytes(signature))
        except (BadSignatureError, ValueError) as e:
            raise ValidationFailure(f"Invalid signature for {pubkey}") from e


def _signer_set(tx: Transaction) -> Set[Pubkey]:
    return {
        pubkey
        for pubkey, signature in zip(_declared_signers(tx), tx.signatures)
        if signature != Signature.default()
    }


def _verified_transaction(artifact: str) -> Transaction:
    tx = decode_artifact(artifact)
    primary_signature(tx)
    verify_signatures(tx)
    return tx


def validate_native_transfer(artifact: str, route: Route) -> DecodedTransfer:
    """
    Validate a SOL transfer paying the route exactly.

    Args:
        artifact: base58 signed transaction from the x-payment header
        route: route the payment must satisfy

    Returns:
        DecodedTransfer for the first qualifying system transfer

    Raises:
        ValidationFailure: if no instruction pays the route
    """
    tx = _verified_transaction(artifact)
    account_keys = tx.message.account_keys
    destination = Pubkey.from_string(route.destination)
    required = route.amount_units
    signers = _signer_set(tx)

    for ix in tx.message.instructions:
        if account_keys[ix.program_id_index] != SYSTEM_PROGRAM_ID:
            continue

        data = bytes(ix.data)
        accounts = list(ix.accounts)
        if len(data) != SYSTEM_TRANSFER_LAYOUT.size or len(accounts) < 2:
            continue

        index, lamports = SYSTEM_TRANSFER_LAYOUT.unpack(data)
        if index != SYSTEM_TRANSFER_INDEX:
            continue

        source = account_keys[accounts[0]]
        recipient = account_keys[accounts[1]]

        if recipient != destination or lamports != required:
            continue
        if source not in signers:
            logger.warning(f"Transfer source {str(source)[:8]}... did not sign the transaction")
            continue

        return DecodedTransfer(
            from_=str(source),
            to=str(recipient),
            amount=str(lamports),
            mint=None,
            signer=str(account_keys[0]),
        )

    raise ValidationFailure("No valid SOL transfer instruction found")


def derive_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Derive the associated token account of `owner` for `mint`."""
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def validate_token_transfer(artifact: str, route: Route) -> DecodedTransfer:
    """
    Validate an SPL token transfer paying the route owner's ATA exactly.

    Accepts Transfer and TransferChecked from the Token and Token-2022 programs.
    """
    if not route.mint:
        raise ValidationFailure("Mint is required for token transfer validation")

    tx = _verified_transaction(artifact)
    account_keys = tx.message.account_keys
    expected_dest = derive_associated_token_address(
        Pubkey.from_string(route.destination),
        Pubkey.from_string(route.mint),
    )
    required = route.amount_units

    for ix in tx.message.instructions:
        program_id = account_keys[ix.program_id_index]
        if program_id not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            continue

        data = bytes(ix.data)
        accounts = list(ix.accounts)
        is_transfer = len(data) >= 9 and data[0] == TOKEN_TRANSFER
        is_transfer_checked = len(data) >= 10 and data[0] == TOKEN_TRANSFER_CHECKED
        if not is_transfer and not is_transfer_checked:
            continue

        dest_index = 1 if is_transfer else 2
        if len(accounts) <= dest_index:
            continue
        if account_keys[accounts[dest_index]] != expected_dest:
            continue

        amount = int.from_bytes(data[1:9], "little")
        if amount != required:
            continue

        return DecodedTransfer(
            from_=str(account_keys[accounts[0]]),
            to=route.destination,
            amount=route.amount,
            mint=route.mint,
            signer=str(account_keys[0]),
        )

    raise ValidationFailure("No valid SPL transfer instruction found")


def validate_for_route(artifact: str, route: Route) -> DecodedTransfer:
    """Validate against the SOL or SPL rules depending on the route."""
    if route.mint:
        return validate_token_transfer(artifact, route)
    return validate_native_transfer(artifact, route)
