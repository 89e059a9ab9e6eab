"""Donation recording: recorder protocol, in-memory recorder and channel dispatcher."""

from backend_paywatch.donations.recorder import (
    DonationDispatcher,
    DonationHandler,
    DonationRecorder,
    InMemoryDonationRecorder,
)

__all__ = [
    "DonationDispatcher",
    "DonationHandler",
    "DonationRecorder",
    "InMemoryDonationRecorder",
]
