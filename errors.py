# errors.py
"""
Spot Keeper — error taxonomy.

Every failure a trigger attempt can hit is a KeeperError. RetryingTrigger
retries them, except a RejectedError after which the ledger shows the round
already advanced: that ends the cycle as "already_advanced". The manual
/trigger endpoint reports them as-is.
"""

from __future__ import annotations
from typing import Optional, Sequence


class KeeperError(Exception):
    """Base class for keeper failures."""


class ReadError(KeeperError):
    """Ledger unreachable, game account missing, or round state undecodable."""


class ProverError(KeeperError):
    """VRF prover could not run, failed, or printed an unparseable result."""


class SubmitError(KeeperError):
    """Transport or signing failure while sending the transaction."""


class RejectedError(KeeperError):
    """The ledger ran the instruction and rejected it."""

    def __init__(self, message: str, digest: Optional[str] = None, logs: Sequence[str] = ()):
        super().__init__(message)
        self.digest = digest
        self.logs = list(logs)


class TriggerInProgress(KeeperError):
    """Another trigger currently holds the submission slot."""
