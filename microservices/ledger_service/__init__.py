"""
Ledger Service

Credit ledger for the platform's virtual currency.

Features:
- Per-user credit accounts backed by an append-only statement log
- Paid top-ups, free credit grants and subscription credit schedules
- Consumption across free -> subscription -> unallocated sources
- Source-aware refunds that skip expired grants
- Scheduled issuance and expiration sweeps
- Event-driven integration with payment and subscription services
"""

__version__ = "1.0.0"
