"""
x402 Payment Protocol Integration Module.

This module implements the x402 payment protocol for marketplace purchases:
a listing's secret is only released after the buyer's USDC payment to the
seller has been settled by the facilitator.

Key components:
- facilitator: payment requirements, X-PAYMENT decoding, verify/settle delegation
- pricing: USDC amount conversion
- audit: purchase and reconciliation audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
