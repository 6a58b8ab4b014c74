"""Stripe configuration read from the environment."""

import os
import logging

import stripe

from ledger.exceptions import ProviderUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300


def get_stripe_api_key() -> str:
    return (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


def configure_stripe() -> None:
    """Set `stripe.api_key` or raise ProviderUnavailableError."""
    api_key = get_stripe_api_key()
    if not api_key:
        raise ProviderUnavailableError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set")
    stripe.api_key = api_key


def get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def get_webhook_tolerance() -> int:
    raw = os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS")
    if not raw:
        return DEFAULT_WEBHOOK_TOLERANCE_SECONDS
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid STRIPE_WEBHOOK_TOLERANCE_SECONDS={raw!r}, using {DEFAULT_WEBHOOK_TOLERANCE_SECONDS}")
        return DEFAULT_WEBHOOK_TOLERANCE_SECONDS


def get_client_url() -> str:
    return os.getenv("CLIENT_URL", "http://localhost:3000").rstrip("/")
