"""
Backend PayWatch: on-chain payment verification and wallet monitoring.

Confirms claimed token transfers against an expected amount and recipient,
and keeps one live subscription per campaign wallet (plus the platform
wallet) so donations are detected as soon as they are mined. Modular layout
with clear separation between config, chain client, verifier, subscriptions
and the engine facade used by the API layer.
"""

__version__ = "0.1.0"
