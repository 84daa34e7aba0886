"""
Sniper error taxonomy

Transient provider failures are retried with backoff, trade failures are
reported as failed results, usage errors fail fast.
"""
import asyncio

import requests


class SniperError(Exception):
    """Base class for every error raised by the sniper core"""


# ---- Provider ----

class TransientProviderError(SniperError):
    """Network hiccup, timeout or rate limit from the RPC endpoint"""


# ---- Trade path ----

class QuoteUnavailable(SniperError):
    """Router quote reverted or failed (usually no liquidity yet)"""


class GasEstimationFailed(SniperError):
    """Node could not estimate gas for the swap call"""


class InsufficientAllowance(SniperError):
    """Router approval transaction failed"""


class InsufficientFunds(SniperError):
    """Wallet balance too low to cover value + gas"""


class SubmissionFailed(SniperError):
    """Wallet or node rejected the transaction"""


class ConfirmationFailed(SniperError):
    """Transaction was mined but reverted, or never confirmed"""


# ---- Usage ----

class AlreadyListening(SniperError):
    """start_listening() called twice without stop_listening()"""


class NotInitialized(SniperError):
    """Operation needs a signing credential that was never loaded"""


class PositionNotFound(SniperError):
    pass


class OrderNotFound(SniperError):
    pass


class IllegalTransition(SniperError):
    """Status change not allowed by the position/order lifecycle"""


class InvalidConfig(SniperError, ValueError):
    pass


# Errors worth another attempt
TRANSIENT_ERRORS = (
    TransientProviderError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
    requests.exceptions.RequestException,
)
