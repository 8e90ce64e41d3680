# app/signing/verifier.py
"""
Signature verification for EOA and smart-contract wallets.

All verifiers expose one async method, ``verify(address, message, signature)``,
where ``message`` is an eth_account SignableMessage (EIP-191 personal message
or EIP-712 typed data). Callers never need to know which kind of wallet
produced the signature:

- EOASignatureVerifier recovers the signer locally with ECDSA
- ContractSignatureVerifier asks the wallet contract via ERC-1271
  ``isValidSignature(bytes32,bytes)`` over JSON-RPC
- ChainSignatureVerifier tries recovery first and falls back to ERC-1271
  when the address holds contract code
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import requests
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import SignableMessage
from eth_utils import keccak, to_bytes, to_checksum_address

logger = logging.getLogger(__name__)

# bytes4(keccak256("isValidSignature(bytes32,bytes)"))
ERC1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
ERC1271_SELECTOR = ERC1271_MAGIC_VALUE


class SignatureVerificationError(Exception):
    """The verifier could not reach a verdict (RPC failure, malformed response)."""


def signable_message_hash(message: SignableMessage) -> bytes:
    """EIP-191 digest of a signable message, the hash wallets actually sign."""
    return keccak(b"\x19" + message.version + message.header + message.body)


def _signature_bytes(signature: str) -> bytes:
    return to_bytes(hexstr=signature)


def _same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


class SignatureVerifier(ABC):
    """Capability: decide whether ``address`` produced ``signature`` over ``message``."""

    @abstractmethod
    async def verify(self, address: str, message: SignableMessage, signature: str) -> bool:
        ...


class EOASignatureVerifier(SignatureVerifier):
    """Plain-key wallets: recover the signer and compare addresses."""

    async def verify(self, address: str, message: SignableMessage, signature: str) -> bool:
        try:
            recovered = Account.recover_message(message, signature=_signature_bytes(signature))
        except Exception as e:
            logger.debug(f"ECDSA recovery failed: {e}")
            return False
        return _same_address(recovered, address)


class JsonRpcClient:
    """
    Minimal JSON-RPC client for the configured chain.

    Requests are blocking (``requests``) and run in a worker thread so the
    event loop keeps serving other requests.
    """

    def __init__(self, rpc_url: str, timeout: float = 10.0):
        self.rpc_url = rpc_url
        self.timeout = timeout

    def _call_sync(self, method: str, params: List[Any]) -> Any:
        response = requests.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "method": method, "params": params, "id": 1},
            timeout=self.timeout,
        )
        response.raise_for_status()

        result = response.json()
        if "error" in result:
            raise SignatureVerificationError(f"RPC error: {result['error']}")
        if "result" not in result:
            raise SignatureVerificationError("Invalid RPC response: missing 'result' field")
        return result["result"]

    async def call(self, method: str, params: List[Any]) -> Any:
        return await asyncio.to_thread(self._call_sync, method, params)

    async def get_code(self, address: str) -> str:
        return await self.call("eth_getCode", [to_checksum_address(address), "latest"])

    async def eth_call(self, to: str, data: str) -> str:
        return await self.call("eth_call", [{"to": to_checksum_address(to), "data": data}, "latest"])


class ContractSignatureVerifier(SignatureVerifier):
    """ERC-1271 smart-contract wallets."""

    def __init__(self, rpc: JsonRpcClient):
        self.rpc = rpc

    async def verify(self, address: str, message: SignableMessage, signature: str) -> bool:
        digest = signable_message_hash(message)
        try:
            signature_bytes = _signature_bytes(signature)
        except ValueError:
            return False
        calldata = ERC1271_SELECTOR + abi_encode(["bytes32", "bytes"], [digest, signature_bytes])

        try:
            result = await self.rpc.eth_call(address, "0x" + calldata.hex())
        except (requests.RequestException, SignatureVerificationError) as e:
            # a reverting isValidSignature is reported as an RPC error
            logger.warning(f"ERC-1271 check failed for {address}: {e}")
            return False

        returned = to_bytes(hexstr=result) if result and result != "0x" else b""
        return returned[:4] == ERC1271_MAGIC_VALUE


class ChainSignatureVerifier(SignatureVerifier):
    """Recover locally when possible, otherwise defer to the wallet contract."""

    def __init__(self, rpc: Optional[JsonRpcClient] = None):
        self.rpc = rpc
        self.eoa = EOASignatureVerifier()
        self.contract = ContractSignatureVerifier(rpc) if rpc is not None else None

    async def _has_code(self, address: str) -> bool:
        try:
            code = await self.rpc.get_code(address)
        except (requests.RequestException, SignatureVerificationError) as e:
            logger.warning(f"eth_getCode failed for {address}: {e}")
            return False
        return bool(code) and code not in ("0x", "0x0")

    async def verify(self, address: str, message: SignableMessage, signature: str) -> bool:
        if await self.eoa.verify(address, message, signature):
            return True

        if self.contract is None:
            return False

        if not await self._has_code(address):
            return False

        logger.info(f"Verifying smart-contract wallet signature for {address}")
        return await self.contract.verify(address, message, signature)
