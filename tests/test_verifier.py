"""
Tests for solgate.verifier.

Tests cover:
- SOL transfer validation (amount, destination, signer checks)
- Signature verification over the full message
- SPL Transfer / TransferChecked validation against the derived ATA
- Artifact decoding errors
"""
import struct

import base58
import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, CompiledInstruction, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.system_program import ID as SYSTEM_PROGRAM_ID, TransferParams, transfer
from solders.transaction import Transaction
from spl.token.instructions import (
    TransferCheckedParams,
    TransferParams as TokenTransferParams,
    get_associated_token_address,
    transfer as token_transfer,
    transfer_checked,
)

from solgate.types import Route
from solgate.verifier import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    InvalidArtifact,
    ValidationFailure,
    derive_associated_token_address,
    extract_signature,
    validate_for_route,
    validate_native_transfer,
    validate_token_transfer,
)


def signed(instructions, payer, signers=None):
    return Transaction.new_signed_with_payer(
        instructions, payer.pubkey(), signers or [payer], Hash.new_unique()
    )


class TestNativeTransfer:
    """Tests for validate_native_transfer."""

    def test_exact_payment_decodes(self, sol_payment, route, payer, merchant):
        """Should return the transfer fields for an exact payment."""
        decoded = validate_native_transfer(sol_payment(5000), route)

        assert decoded.from_ == str(payer.pubkey())
        assert decoded.to == str(merchant.pubkey())
        assert decoded.amount == "5000"
        assert decoded.mint is None
        assert decoded.signer == str(payer.pubkey())

    @pytest.mark.parametrize("lamports", [4999, 5001, 1, 10_000])
    def test_amount_mismatch_fails(self, sol_payment, route, lamports):
        """Should reject under- and overpayments."""
        with pytest.raises(ValidationFailure):
            validate_native_transfer(sol_payment(lamports), route)

    def test_wrong_destination_fails(self, sol_payment, route):
        """Should reject a transfer to another wallet."""
        with pytest.raises(ValidationFailure):
            validate_native_transfer(sol_payment(5000, to=Keypair().pubkey()), route)

    def test_large_amount_beyond_float_precision(self, payer, merchant, encode_tx):
        """Should compare amounts as integers above 2**53."""
        lamports = 2 ** 63 + 1
        route = Route(destination=str(merchant.pubkey()), amount=str(lamports))
        artifact = encode_tx(signed(
            [transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=merchant.pubkey(), lamports=lamports))],
            payer,
        ))

        assert validate_native_transfer(artifact, route).amount == str(lamports)

        with pytest.raises(ValidationFailure):
            validate_native_transfer(artifact, Route(destination=str(merchant.pubkey()), amount=str(lamports - 1)))

    def test_first_qualifying_instruction_wins(self, payer, merchant, route, encode_tx):
        """Should skip non-matching transfers and use the first match."""
        ixs = [
            transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=merchant.pubkey(), lamports=1)),
            transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=merchant.pubkey(), lamports=5000)),
        ]
        decoded = validate_native_transfer(encode_tx(signed(ixs, payer)), route)
        assert decoded.amount == "5000"

    def test_source_must_be_a_signer(self, payer, merchant, route, encode_tx):
        """Should reject a transfer out of an account that did not sign."""
        victim = Keypair().pubkey()
        ix = Instruction(
            SYSTEM_PROGRAM_ID,
            struct.pack("<IQ", 2, 5000),
            [
                AccountMeta(victim, is_signer=False, is_writable=True),
                AccountMeta(merchant.pubkey(), is_signer=False, is_writable=True),
            ],
        )
        with pytest.raises(ValidationFailure):
            validate_native_transfer(encode_tx(signed([ix], payer)), route)

    def test_no_system_instruction_fails(self, payer, route, encode_tx):
        """Should reject a transaction without a system transfer."""
        ix = Instruction(Keypair().pubkey(), b"\x02" + (5000).to_bytes(8, "little"), [])
        with pytest.raises(ValidationFailure):
            validate_native_transfer(encode_tx(signed([ix], payer)), route)


class TestSignatureVerification:
    """Tests for full-message signature checks."""

    def test_altered_message_bytes_fail(self, sol_payment, route):
        """Should reject a transaction whose message changed after signing."""
        wire = bytearray(base58.b58decode(sol_payment(5000)))
        # 1 (sig count) + 64 (sig) + 3 (header) + 1 (key count) + 3 * 32 (keys) = blockhash
        blockhash_offset = 1 + 64 + 3 + 1 + 3 * 32
        wire[blockhash_offset] ^= 0xFF
        tampered = base58.b58encode(bytes(wire)).decode("ascii")

        with pytest.raises(ValidationFailure):
            validate_native_transfer(tampered, route)

    def test_spliced_signature_fails(self, payer, merchant, route, encode_tx):
        """Should reject a valid signature replayed over a different message."""
        original = signed(
            [transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=merchant.pubkey(), lamports=1))],
            payer,
        )
        other_message = signed(
            [transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=merchant.pubkey(), lamports=5000))],
            payer,
        ).message
        spliced = Transaction.populate(other_message, original.signatures)

        with pytest.raises(ValidationFailure):
            validate_native_transfer(encode_tx(spliced), route)

    def test_partially_signed_fails(self, payer, merchant, route, encode_tx):
        """Should reject a transaction missing a required co-signature."""
        co_signer = Keypair()
        blockhash = Hash.new_unique()
        ixs = [
            transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=merchant.pubkey(), lamports=5000)),
            transfer(TransferParams(from_pubkey=co_signer.pubkey(), to_pubkey=merchant.pubkey(), lamports=1)),
        ]
        tx = Transaction.new_unsigned(Message.new_with_blockhash(ixs, payer.pubkey(), blockhash))
        tx.partial_sign([payer], blockhash)

        with pytest.raises(ValidationFailure):
            validate_native_transfer(encode_tx(tx), route)

    def test_unsigned_fails_as_invalid_artifact(self, payer, merchant, route, encode_tx):
        """Should treat an unsigned transaction as an invalid artifact."""
        ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=merchant.pubkey(), lamports=5000))
        tx = Transaction.new_unsigned(Message.new_with_blockhash([ix], payer.pubkey(), Hash.new_unique()))

        with pytest.raises(InvalidArtifact):
            validate_native_transfer(encode_tx(tx), route)


class TestTokenTransfer:
    """Tests for validate_token_transfer."""

    @pytest.fixture
    def mint(self):
        return Keypair().pubkey()

    @pytest.fixture
    def token_route(self, merchant, mint):
        return Route(destination=str(merchant.pubkey()), amount="1000000", mint=str(mint))

    def _transfer(self, payer, merchant, mint, amount, program_id=TOKEN_PROGRAM_ID, dest=None):
        return token_transfer(TokenTransferParams(
            program_id=program_id,
            source=get_associated_token_address(payer.pubkey(), mint),
            dest=dest or get_associated_token_address(merchant.pubkey(), mint),
            owner=payer.pubkey(),
            amount=amount,
        ))

    def test_derived_address_matches_spl(self, merchant, mint):
        """Should derive the same ATA as the SPL helper."""
        assert derive_associated_token_address(merchant.pubkey(), mint) == \
            get_associated_token_address(merchant.pubkey(), mint)

    def test_transfer_decodes(self, payer, merchant, mint, token_route, encode_tx):
        """Should accept an exact Transfer to the owner's ATA."""
        artifact = encode_tx(signed([self._transfer(payer, merchant, mint, 1_000_000)], payer))
        decoded = validate_token_transfer(artifact, token_route)

        assert decoded.from_ == str(get_associated_token_address(payer.pubkey(), mint))
        assert decoded.to == str(merchant.pubkey())
        assert decoded.amount == "1000000"
        assert decoded.mint == str(mint)
        assert decoded.signer == str(payer.pubkey())

    def test_transfer_checked_decodes(self, payer, merchant, mint, token_route, encode_tx):
        """Should accept TransferChecked with the destination at index 2."""
        ix = transfer_checked(TransferCheckedParams(
            program_id=TOKEN_PROGRAM_ID,
            source=get_associated_token_address(payer.pubkey(), mint),
            mint=mint,
            dest=get_associated_token_address(merchant.pubkey(), mint),
            owner=payer.pubkey(),
            amount=1_000_000,
            decimals=6,
        ))
        decoded = validate_token_transfer(encode_tx(signed([ix], payer)), token_route)
        assert decoded.amount == "1000000"

    def test_token_2022_program_accepted(self, payer, merchant, mint, token_route, encode_tx):
        """Should accept transfers issued through Token-2022."""
        ix = self._transfer(payer, merchant, mint, 1_000_000, program_id=TOKEN_2022_PROGRAM_ID)
        assert validate_token_transfer(encode_tx(signed([ix], payer)), token_route).mint == str(mint)

    def test_amount_mismatch_fails(self, payer, merchant, mint, token_route, encode_tx):
        """Should reject any amount other than the route amount."""
        artifact = encode_tx(signed([self._transfer(payer, merchant, mint, 999_999)], payer))
        with pytest.raises(ValidationFailure):
            validate_token_transfer(artifact, token_route)

    def test_owner_wallet_as_destination_fails(self, payer, merchant, mint, token_route, encode_tx):
        """Should require the derived ATA, not the owner wallet itself."""
        ix = self._transfer(payer, merchant, mint, 1_000_000, dest=merchant.pubkey())
        with pytest.raises(ValidationFailure):
            validate_token_transfer(encode_tx(signed([ix], payer)), token_route)

    def test_other_mint_fails(self, payer, merchant, mint, token_route, encode_tx):
        """Should reject a transfer into the ATA of a different mint."""
        other_mint = Keypair().pubkey()
        ix = self._transfer(payer, merchant, other_mint, 1_000_000)
        with pytest.raises(ValidationFailure):
            validate_token_transfer(encode_tx(signed([ix], payer)), token_route)

    def test_missing_mint_fails(self, sol_payment, route):
        """Should refuse token validation for a SOL route."""
        with pytest.raises(ValidationFailure):
            validate_token_transfer(sol_payment(5000), route)

    def test_sol_transfer_does_not_satisfy_token_route(self, sol_payment, merchant, mint):
        """Should not accept lamports for a token route."""
        token_route = Route(destination=str(merchant.pubkey()), amount="5000", mint=str(mint))
        with pytest.raises(ValidationFailure):
            validate_for_route(sol_payment(5000), token_route)


class TestArtifactDecoding:
    """Tests for decoding and signature extraction."""

    @pytest.mark.parametrize("artifact", ["", "   ", "0OIl", "3mJr7AoUXx2Wqd"])
    def test_garbage_is_invalid(self, artifact, route):
        """Should reject empty, non-base58 and non-transaction input."""
        with pytest.raises(InvalidArtifact):
            validate_for_route(artifact, route)

    def test_extract_signature(self, payer, merchant, encode_tx):
        """Should return the fee payer signature in base58."""
        tx = signed(
            [transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=merchant.pubkey(), lamports=5))],
            payer,
        )
        assert extract_signature(encode_tx(tx)) == str(tx.signatures[0])

    def test_out_of_range_account_index_is_invalid(self, payer, merchant, route, encode_tx):
        """Should reject a signed message whose instruction points past the account keys."""
        data = struct.pack("<IQ", 2, int(route.amount))
        tx = Transaction.new_with_compiled_instructions(
            [payer],
            [merchant.pubkey()],
            Hash.new_unique(),
            [SYSTEM_PROGRAM_ID],
            [CompiledInstruction(2, data, bytes([0, 7]))],
        )

        with pytest.raises(InvalidArtifact):
            validate_for_route(encode_tx(tx), route)

    def test_invalid_artifact_is_a_validation_failure(self):
        """Should let callers handle both kinds with one except clause."""
        assert issubclass(InvalidArtifact, ValidationFailure)


class TestRoute:
    """Tests for Route construction."""

    @pytest.mark.parametrize("amount", ["-1", "1.5", "abc", ""])
    def test_rejects_bad_amount(self, merchant, amount):
        with pytest.raises(ValueError):
            Route(destination=str(merchant.pubkey()), amount=amount)

    def test_rejects_bad_destination(self):
        with pytest.raises(ValueError):
            Route(destination="not-a-key", amount="1")

    def test_to_dict(self, route, merchant):
        assert route.to_dict() == {"destination": str(merchant.pubkey()), "amount": "5000", "mint": None}
