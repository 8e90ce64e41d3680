"""
Wallet signature authorization for marketplace actions.

There is no login system: every mutating request and every secret read is
authorized by a wallet signature over the request itself.

Key components:
- typed_data: EIP-712 domain and CreateListing/UpdateListing/DeleteListing schemas
- verifier: EOA (ECDSA recovery) and ERC-1271 smart-wallet signature verification
- authorizer: structured (EIP-712) and freeform timestamped message checks
"""
