# tests/test_signing.py
"""
Unit tests for EIP-712 schemas, signature verification and the
signed-action authorizer.
"""
import asyncio
import base64
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests
from eth_account.messages import encode_defunct

from app.core.errors import AuthorizationError
from app.signing.authorizer import (
    SignedActionAuthorizer,
    decode_message,
    extract_address,
    extract_timestamp,
)
from app.signing.typed_data import (
    CREATE_LISTING,
    DELETE_LISTING,
    EIP712_TYPES,
    UPDATE_LISTING,
    build_typed_data,
    create_listing_message,
    delete_listing_message,
    format_price,
    get_eip712_domain,
    update_listing_message,
)
from app.signing.verifier import (
    ERC1271_MAGIC_VALUE,
    ChainSignatureVerifier,
    ContractSignatureVerifier,
    EOASignatureVerifier,
    SignatureVerificationError,
    SignatureVerifier,
)

from conftest import BASE_SEPOLIA, reveal_text, sign_freeform, sign_typed

BASE_MAINNET = 8453
NOW_MS = 1_700_000_000_000


def make_authorizer(chain_id=BASE_SEPOLIA, now=NOW_MS, verifier=None):
    return SignedActionAuthorizer(verifier or EOASignatureVerifier(), chain_id, clock=lambda: now)


class TestFormatPrice:
    """Test price rendering used inside signed messages."""

    def test_drops_trailing_zeros(self):
        """1.50 is signed as "1.5"."""
        assert format_price(Decimal("1.50")) == "1.5"

    def test_integer_keeps_digits(self):
        """100 is not rendered in exponent notation."""
        assert format_price(Decimal("100")) == "100"
        assert format_price(Decimal("100.000")) == "100"

    def test_float_input(self):
        """Floats render like their shortest decimal form."""
        assert format_price(0.1) == "0.1"

    def test_none_is_empty(self):
        """Missing price signs as empty string."""
        assert format_price(None) == ""


class TestTypedSchemas:
    """Test EIP-712 schema construction."""

    def test_domain_binds_chain(self):
        """Domain carries name, version and chain id."""
        assert get_eip712_domain(BASE_SEPOLIA) == {
            "name": "Invite Markets",
            "version": "1",
            "chainId": BASE_SEPOLIA,
        }

    def test_field_order(self):
        """Schemas list fields in the order wallets sign them."""
        assert [f["name"] for f in EIP712_TYPES[CREATE_LISTING]] == [
            "inviteUrl", "priceUsdc", "sellerAddress", "appId", "appName", "nonce",
        ]
        assert [f["name"] for f in EIP712_TYPES[UPDATE_LISTING]] == [
            "slug", "inviteUrl", "priceUsdc", "sellerAddress", "appName", "nonce",
        ]
        assert [f["name"] for f in EIP712_TYPES[DELETE_LISTING]] == ["slug", "sellerAddress", "nonce"]

    def test_optional_fields_become_empty_strings(self):
        """Absent optional fields are signed as empty strings."""
        message = create_listing_message("0xabc", Decimal("5"), 1, invite_url="https://x.io/i")
        assert message["appId"] == ""
        assert message["appName"] == ""
        assert message["priceUsdc"] == "5"

        update = update_listing_message("slug1", "0xabc", 2)
        assert update["inviteUrl"] == ""
        assert update["priceUsdc"] == ""

    def test_unknown_primary_type(self):
        """Unknown actions cannot be encoded."""
        with pytest.raises(ValueError):
            build_typed_data("TransferListing", {}, BASE_SEPOLIA)


class TestSignatureVerifierBase:
    """Test the verifier capability."""

    def test_cannot_instantiate_base(self):
        """The base verifier has no verdict of its own."""
        with pytest.raises(TypeError):
            SignatureVerifier()

    def test_subclass_without_verify_rejected(self):
        """A verifier must implement verify."""
        class Incomplete(SignatureVerifier):
            pass

        with pytest.raises(TypeError):
            Incomplete()


class TestEOASignatureVerifier:
    """Test local ECDSA recovery."""

    def test_valid_signature(self, seller):
        """Signature by the address verifies."""
        _, signature = sign_freeform(seller, "hello")
        result = asyncio.run(EOASignatureVerifier().verify(seller.address, encode_defunct(text="hello"), signature))
        assert result is True

    def test_address_compare_is_case_insensitive(self, seller):
        """Lowercase address still matches the recovered signer."""
        _, signature = sign_freeform(seller, "hello")
        result = asyncio.run(
            EOASignatureVerifier().verify(seller.address.lower(), encode_defunct(text="hello"), signature)
        )
        assert result is True

    def test_other_signer(self, seller, stranger):
        """Signature by a different key does not verify."""
        _, signature = sign_freeform(stranger, "hello")
        result = asyncio.run(EOASignatureVerifier().verify(seller.address, encode_defunct(text="hello"), signature))
        assert result is False

    def test_garbage_signature(self, seller):
        """Malformed signature is a failed verification, not an error."""
        result = asyncio.run(EOASignatureVerifier().verify(seller.address, encode_defunct(text="hello"), "0x1234"))
        assert result is False


class TestContractSignatureVerifier:
    """Test ERC-1271 verification over a mocked RPC."""

    WALLET = "0x" + "ab" * 20

    def test_magic_value_accepts(self):
        """Contract returning the magic value accepts the signature."""
        rpc = MagicMock()
        rpc.eth_call = AsyncMock(return_value="0x" + ERC1271_MAGIC_VALUE.hex() + "00" * 28)
        verifier = ContractSignatureVerifier(rpc)

        assert asyncio.run(verifier.verify(self.WALLET, encode_defunct(text="hi"), "0x" + "aa" * 65)) is True
        to, data = rpc.eth_call.call_args.args
        assert to == self.WALLET
        assert data.startswith("0x1626ba7e")

    def test_other_value_rejects(self):
        """Any other return value rejects."""
        rpc = MagicMock()
        rpc.eth_call = AsyncMock(return_value="0x" + "00" * 32)
        verifier = ContractSignatureVerifier(rpc)

        assert asyncio.run(verifier.verify(self.WALLET, encode_defunct(text="hi"), "0x" + "aa" * 65)) is False

    def test_revert_rejects(self):
        """Reverting isValidSignature rejects."""
        rpc = MagicMock()
        rpc.eth_call = AsyncMock(side_effect=SignatureVerificationError("execution reverted"))
        verifier = ContractSignatureVerifier(rpc)

        assert asyncio.run(verifier.verify(self.WALLET, encode_defunct(text="hi"), "0x" + "aa" * 65)) is False


class TestChainSignatureVerifier:
    """Test EOA-first verification with ERC-1271 fallback."""

    def test_eoa_needs_no_rpc(self, seller):
        """A recoverable signature never touches the RPC."""
        rpc = MagicMock()
        rpc.get_code = AsyncMock()
        _, signature = sign_freeform(seller, "hello")

        result = asyncio.run(ChainSignatureVerifier(rpc).verify(seller.address, encode_defunct(text="hello"), signature))

        assert result is True
        rpc.get_code.assert_not_called()

    def test_contract_fallback(self, stranger):
        """Address with code falls back to ERC-1271."""
        wallet = "0x" + "cd" * 20
        rpc = MagicMock()
        rpc.get_code = AsyncMock(return_value="0x6080")
        rpc.eth_call = AsyncMock(return_value="0x" + ERC1271_MAGIC_VALUE.hex() + "00" * 28)
        _, signature = sign_freeform(stranger, "hello")

        result = asyncio.run(ChainSignatureVerifier(rpc).verify(wallet, encode_defunct(text="hello"), signature))
        assert result is True

    def test_no_code_rejects(self, stranger):
        """Address without code and a non-matching signature is rejected."""
        rpc = MagicMock()
        rpc.get_code = AsyncMock(return_value="0x")
        rpc.eth_call = AsyncMock()
        _, signature = sign_freeform(stranger, "hello")

        result = asyncio.run(
            ChainSignatureVerifier(rpc).verify("0x" + "cd" * 20, encode_defunct(text="hello"), signature)
        )
        assert result is False
        rpc.eth_call.assert_not_called()

    def test_rpc_failure_fails_closed(self, stranger):
        """Unreachable RPC rejects instead of accepting."""
        rpc = MagicMock()
        rpc.get_code = AsyncMock(side_effect=requests.ConnectionError("down"))
        _, signature = sign_freeform(stranger, "hello")

        result = asyncio.run(
            ChainSignatureVerifier(rpc).verify("0x" + "cd" * 20, encode_defunct(text="hello"), signature)
        )
        assert result is False


class TestMessageParsing:
    """Test freeform message helpers."""

    def test_extract_timestamp(self):
        """Timestamp line is parsed as milliseconds."""
        assert extract_timestamp("foo\nTimestamp: 1700000000000\nbar") == 1_700_000_000_000
        assert extract_timestamp("no time here") is None

    def test_extract_address_lowercases(self):
        """Address line is normalized to lowercase."""
        assert extract_address("Address: 0xABCDEF0000000000000000000000000000000001") == (
            "0xabcdef0000000000000000000000000000000001"
        )
        assert extract_address("nothing") is None

    def test_decode_rejects_invalid_base64(self):
        """Non-base64 input raises."""
        with pytest.raises(ValueError):
            decode_message("not base64!!")


class TestAuthorizeTyped:
    """Test EIP-712 authorization of listing actions."""

    def delete_message(self, account, nonce=NOW_MS):
        return delete_listing_message("abc12345", account.address, nonce)

    def test_valid_signature(self, seller):
        """Seller's own signature is authorized."""
        message = self.delete_message(seller)
        signature = sign_typed(seller, DELETE_LISTING, message)

        asyncio.run(make_authorizer().authorize_typed(DELETE_LISTING, message, signature, seller.address))

    def test_lowercase_claimed_address(self, seller):
        """Lowercase addresses in the request are accepted."""
        message = self.delete_message(seller)
        signature = sign_typed(seller, DELETE_LISTING, message)
        lowered = dict(message, sellerAddress=seller.address.lower())

        asyncio.run(make_authorizer().authorize_typed(DELETE_LISTING, lowered, signature, seller.address.lower()))

    def test_other_chain_rejected(self, seller):
        """Signature for Base mainnet is rejected on Base Sepolia."""
        message = self.delete_message(seller)
        signature = sign_typed(seller, DELETE_LISTING, message, chain_id=BASE_MAINNET)

        with pytest.raises(AuthorizationError):
            asyncio.run(make_authorizer().authorize_typed(DELETE_LISTING, message, signature, seller.address))

    def test_other_action_rejected(self, seller):
        """Signature for one action type cannot authorize another."""
        message = update_listing_message("abc12345", seller.address, NOW_MS)
        signature = sign_typed(seller, UPDATE_LISTING, message)

        with pytest.raises(AuthorizationError):
            asyncio.run(
                make_authorizer().authorize_typed(DELETE_LISTING, self.delete_message(seller), signature, seller.address)
            )

    def test_tampered_field_rejected(self, seller):
        """Changing a signed field invalidates the signature."""
        message = create_listing_message(seller.address, Decimal("10"), NOW_MS, invite_url="https://a.io/x", app_id="app")
        signature = sign_typed(seller, CREATE_LISTING, message)
        tampered = dict(message, priceUsdc="1")

        with pytest.raises(AuthorizationError):
            asyncio.run(make_authorizer().authorize_typed(CREATE_LISTING, tampered, signature, seller.address))

    def test_signer_must_match_claimed_address(self, seller, stranger):
        """A stranger cannot act as the seller."""
        message = self.delete_message(stranger)
        signature = sign_typed(stranger, DELETE_LISTING, message)

        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(make_authorizer().authorize_typed(DELETE_LISTING, message, signature, seller.address))
        assert exc_info.value.stage == "address_checking"

    def test_stale_nonce_rejected(self, seller):
        """Nonce older than five minutes is rejected."""
        message = self.delete_message(seller, nonce=NOW_MS - 301_000)
        signature = sign_typed(seller, DELETE_LISTING, message)

        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(make_authorizer().authorize_typed(DELETE_LISTING, message, signature, seller.address))
        assert exc_info.value.stage == "temporal_checking"

    def test_verifier_error_rejects(self, seller):
        """A verifier that raises is treated as a failed signature."""
        verifier = MagicMock()
        verifier.verify = AsyncMock(side_effect=RuntimeError("boom"))
        message = self.delete_message(seller)

        with pytest.raises(AuthorizationError):
            asyncio.run(
                make_authorizer(verifier=verifier).authorize_typed(DELETE_LISTING, message, "0x" + "aa" * 65, seller.address)
            )


class TestAuthorizeFreeform:
    """Test timestamped freeform message authorization."""

    def test_fresh_message(self, buyer):
        """Message signed 299 seconds ago is accepted and returned decoded."""
        text = reveal_text(buyer.address, NOW_MS - 299_000)
        encoded, signature = sign_freeform(buyer, text)

        decoded = asyncio.run(make_authorizer().authorize_freeform(encoded, signature, buyer.address))
        assert decoded == text

    def test_expired_message(self, buyer):
        """Message signed 301 seconds ago is rejected."""
        encoded, signature = sign_freeform(buyer, reveal_text(buyer.address, NOW_MS - 301_000))

        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(make_authorizer().authorize_freeform(encoded, signature, buyer.address))
        assert exc_info.value.stage == "temporal_checking"

    def test_small_future_skew_allowed(self, buyer):
        """Timestamp 20 seconds ahead is tolerated."""
        encoded, signature = sign_freeform(buyer, reveal_text(buyer.address, NOW_MS + 20_000))
        asyncio.run(make_authorizer().authorize_freeform(encoded, signature, buyer.address))

    def test_large_future_skew_rejected(self, buyer):
        """Timestamp 40 seconds ahead is rejected."""
        encoded, signature = sign_freeform(buyer, reveal_text(buyer.address, NOW_MS + 40_000))

        with pytest.raises(AuthorizationError):
            asyncio.run(make_authorizer().authorize_freeform(encoded, signature, buyer.address))

    def test_wrong_signer(self, buyer, stranger):
        """Signature by another wallet is rejected."""
        encoded, signature = sign_freeform(stranger, reveal_text(buyer.address, NOW_MS))

        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(make_authorizer().authorize_freeform(encoded, signature, buyer.address))
        assert exc_info.value.stage == "signature_verifying"

    def test_embedded_address_must_match(self, buyer, stranger):
        """Message naming another address is rejected even if signed by the buyer."""
        encoded, signature = sign_freeform(buyer, reveal_text(stranger.address, NOW_MS))

        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(make_authorizer().authorize_freeform(encoded, signature, buyer.address))
        assert exc_info.value.stage == "address_checking"

    def test_invalid_base64(self, buyer):
        """Undecodable message is rejected at decoding."""
        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(make_authorizer().authorize_freeform("%%%not-base64%%%", "0x" + "aa" * 65, buyer.address))
        assert exc_info.value.stage == "decoding"

    def test_timestamp_optional_by_default(self, buyer):
        """Message without a timestamp passes unless one is required."""
        encoded, signature = sign_freeform(buyer, "Reveal my purchase")
        asyncio.run(make_authorizer().authorize_freeform(encoded, signature, buyer.address))

    def test_timestamp_required(self, buyer):
        """Seller edit sessions require a timestamp."""
        encoded, signature = sign_freeform(buyer, "Edit my listing")

        with pytest.raises(AuthorizationError):
            asyncio.run(
                make_authorizer().authorize_freeform(encoded, signature, buyer.address, require_timestamp=True)
            )

    def test_missing_signature(self, buyer):
        """Empty signature is rejected before any work."""
        encoded = base64.b64encode(b"hello").decode()
        with pytest.raises(AuthorizationError) as exc_info:
            asyncio.run(make_authorizer().authorize_freeform(encoded, "", buyer.address))
        assert exc_info.value.stage == "received"
