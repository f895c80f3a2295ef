# paygate/x402/__init__.py
"""
x402 Payment Gate.

Puts priced endpoints behind a native-coin payment on one EVM chain. The
caller pays the configured address, then presents the transaction hash in
the X-Payment-Hash header.

Key components:
- ledger: JSON-RPC reads of transactions, receipts and chain height
- replay: durable record of redeemed and rejected transaction hashes
- verifier: ordered verification checks producing a verdict
- middleware: FastAPI middleware issuing 402 challenges and serving paid requests
- ratelimit: per-IP sliding window limits on priced endpoints
- audit: JSON-lines log of payment events
- pricing: conversions between whole units and the smallest unit

Configuration is loaded from environment variables via paygate.core.config.
"""
