# app/core/chain.py
"""
Chain configuration for the marketplace.

A single ChainConfig is derived from settings at startup and passed to the
EIP-712 domain builder, the signature verifier and the x402 payment settler.
"""
from dataclasses import dataclass

from app.core.config import Settings

BASE_MAINNET_CHAIN_ID = 8453
BASE_SEPOLIA_CHAIN_ID = 84532

# USDC contract addresses by x402 network name
USDC_ADDRESSES = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

# EIP-712 domain name of the USDC contract, needed by EIP-3009 payment payloads
USDC_TOKEN_NAMES = {
    "base": "USD Coin",
    "base-sepolia": "USDC",
}


@dataclass(frozen=True)
class ChainConfig:
    """Network the marketplace settles payments and verifies signatures on."""
    chain_id: int
    network: str
    usdc_address: str
    usdc_name: str
    rpc_url: str
    explorer_url: str


def build_chain_config(settings: Settings) -> ChainConfig:
    """Select Base Sepolia or Base mainnet from the IS_TESTNET flag."""
    if settings.IS_TESTNET:
        network = "base-sepolia"
        return ChainConfig(
            chain_id=BASE_SEPOLIA_CHAIN_ID,
            network=network,
            usdc_address=USDC_ADDRESSES[network],
            usdc_name=USDC_TOKEN_NAMES[network],
            rpc_url=str(settings.BASE_SEPOLIA_RPC_URL),
            explorer_url="https://sepolia.basescan.org",
        )

    network = "base"
    return ChainConfig(
        chain_id=BASE_MAINNET_CHAIN_ID,
        network=network,
        usdc_address=USDC_ADDRESSES[network],
        usdc_name=USDC_TOKEN_NAMES[network],
        rpc_url=str(settings.BASE_RPC_URL),
        explorer_url="https://basescan.org",
    )
