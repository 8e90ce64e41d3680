# app/signing/authorizer.py
"""
Authorization of signed marketplace actions.

Two schemes are supported:

1. Structured (EIP-712) signing for listing mutations. The signed payload
   carries the seller address, the action fields and a millisecond nonce.
2. Freeform timestamped signing for secret reads. The client signs a human
   readable message containing ``Timestamp: <unix-ms>`` and
   ``Address: <0x...>`` lines; only those two lines are parsed.

The authorizer is stateless: every request is re-validated. A failed check
raises AuthorizationError whose stage/reason is for logs only.
"""
import base64
import binascii
import logging
import re
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from eth_account.messages import encode_defunct
from eth_utils import is_address, to_checksum_address

from app.core.errors import AuthorizationError
from app.signing.typed_data import encode_listing_action
from app.signing.verifier import SignatureVerifier

logger = logging.getLogger(__name__)

TIMESTAMP_PATTERN = re.compile(r"Timestamp: (\d+)")
ADDRESS_PATTERN = re.compile(r"Address: (0x[a-fA-F0-9]+)", re.IGNORECASE)

DEFAULT_MAX_AGE_MS = 5 * 60 * 1000
DEFAULT_CLOCK_SKEW_MS = 30_000


class AuthorizationStage(Enum):
    """Stages a single authorization attempt moves through."""
    RECEIVED = "received"
    DECODING = "decoding"
    SIGNATURE_VERIFYING = "signature_verifying"
    TEMPORAL_CHECKING = "temporal_checking"
    ADDRESS_CHECKING = "address_checking"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


def current_time_ms() -> int:
    return int(time.time() * 1000)


def extract_timestamp(message: str) -> Optional[int]:
    match = TIMESTAMP_PATTERN.search(message)
    if not match:
        return None
    return int(match.group(1))


def extract_address(message: str) -> Optional[str]:
    match = ADDRESS_PATTERN.search(message)
    if not match:
        return None
    return match.group(1).lower()


def decode_message(encoded_message: str) -> str:
    """Base64 transport decoding of a freeform message."""
    return base64.b64decode(encoded_message, validate=True).decode("utf-8")


class SignedActionAuthorizer:
    """
    Proves that a request acting as an address was authorized by its holder.

    Args:
        verifier: EOA/ERC-1271 signature verifier
        chain_id: chain bound into the EIP-712 domain
        max_age_ms: freshness window for freeform timestamps and EIP-712 nonces
        clock_skew_ms: how far in the future a freeform timestamp may be
        clock: millisecond clock, injectable for tests
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        chain_id: int,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        clock_skew_ms: int = DEFAULT_CLOCK_SKEW_MS,
        clock: Callable[[], int] = current_time_ms,
    ):
        self.verifier = verifier
        self.chain_id = chain_id
        self.max_age_ms = max_age_ms
        self.clock_skew_ms = clock_skew_ms
        self.clock = clock

    def _reject(self, stage: AuthorizationStage, reason: str, address: Optional[str]) -> AuthorizationError:
        logger.warning(f"Authorization rejected at {stage.value} for {address}: {reason}")
        return AuthorizationError(reason, stage=stage.value)

    async def _verify_signature(self, address: str, signable, signature: str) -> bool:
        try:
            return await self.verifier.verify(address, signable, signature)
        except Exception as e:
            logger.error(f"Signature verifier error for {address}: {e}")
            return False

    async def authorize_typed(
        self,
        primary_type: str,
        message: Dict[str, Any],
        signature: str,
        claimed_address: str,
    ) -> None:
        """
        Authorize an EIP-712 listing action.

        Raises:
            AuthorizationError: address mismatch, bad signature, wrong domain,
                or a nonce outside the freshness window
        """
        stage = AuthorizationStage.RECEIVED
        signer = message.get("sellerAddress") or ""

        if not signature or not is_address(signer) or not is_address(claimed_address or ""):
            raise self._reject(stage, "missing signature or malformed address", claimed_address)

        stage = AuthorizationStage.ADDRESS_CHECKING
        if signer.lower() != claimed_address.lower():
            raise self._reject(stage, "signed address does not match acting address", claimed_address)

        stage = AuthorizationStage.SIGNATURE_VERIFYING
        typed_message = dict(message, sellerAddress=to_checksum_address(signer))
        try:
            signable = encode_listing_action(primary_type, typed_message, self.chain_id)
        except Exception as e:
            raise self._reject(stage, f"typed data could not be encoded: {e}", claimed_address)

        if not await self._verify_signature(claimed_address, signable, signature):
            raise self._reject(stage, f"invalid {primary_type} signature", claimed_address)

        stage = AuthorizationStage.TEMPORAL_CHECKING
        nonce = int(message.get("nonce") or 0)
        if abs(self.clock() - nonce) > self.max_age_ms:
            raise self._reject(stage, "nonce outside freshness window", claimed_address)

        logger.info(f"{primary_type} authorized for {claimed_address.lower()}")

    async def authorize_freeform(
        self,
        encoded_message: str,
        signature: str,
        expected_address: str,
        require_timestamp: bool = False,
    ) -> str:
        """
        Authorize a freeform timestamped message.

        Args:
            encoded_message: base64 encoded message that was signed
            signature: wallet signature over the decoded message
            expected_address: address the action is performed against
            require_timestamp: reject messages without a Timestamp line

        Returns:
            The decoded message

        Raises:
            AuthorizationError: on any failed check
        """
        stage = AuthorizationStage.RECEIVED
        if not encoded_message or not signature or not expected_address:
            raise self._reject(stage, "missing message, signature or address", expected_address)

        stage = AuthorizationStage.DECODING
        try:
            message = decode_message(encoded_message)
        except (binascii.Error, ValueError) as e:
            raise self._reject(stage, f"message is not valid base64 text: {e}", expected_address)

        stage = AuthorizationStage.SIGNATURE_VERIFYING
        if not await self._verify_signature(expected_address, encode_defunct(text=message), signature):
            raise self._reject(stage, "invalid message signature", expected_address)

        stage = AuthorizationStage.TEMPORAL_CHECKING
        timestamp = extract_timestamp(message)
        if timestamp is None:
            if require_timestamp:
                raise self._reject(stage, "message has no timestamp", expected_address)
        else:
            now = self.clock()
            if timestamp > now + self.clock_skew_ms:
                raise self._reject(stage, "timestamp is in the future", expected_address)
            if now - timestamp > self.max_age_ms:
                raise self._reject(stage, "signature expired", expected_address)

        stage = AuthorizationStage.ADDRESS_CHECKING
        embedded_address = extract_address(message)
        if embedded_address is not None and embedded_address != expected_address.lower():
            raise self._reject(stage, "message address does not match", expected_address)

        logger.debug(f"Freeform message authorized for {expected_address.lower()}")
        return message
