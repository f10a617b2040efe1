"""
External collaborators: payment transfer and identity verification.

Only the interfaces the engine depends on plus in-process stand-ins.  A real
deployment swaps in clients for its payment rail and KYC provider.
"""

from __future__ import annotations

import logging
import secrets
import threading
from typing import Iterable

from parametric_oracle.errors import TransferAmbiguous, TransferFailed

logger = logging.getLogger(__name__)


class TransferClient:
    """``transfer(to_address, amount) -> transaction reference``.

    Implementations raise ``TransferFailed`` when the transfer definitely did
    not happen and ``TransferAmbiguous`` when the outcome is unknown.
    """

    def transfer(self, to_address: str, amount: float) -> str:
        raise NotImplementedError


class MockTransferClient(TransferClient):
    """Records transfers in memory and returns random 32-byte hex hashes.

    ``fail_next`` / ``ambiguous_next`` make the next N calls fail, which is
    how tests and demos exercise the retry and reconciliation paths.
    """

    def __init__(self, fail_next: int = 0, ambiguous_next: int = 0):
        self._lock = threading.Lock()
        self.fail_next = fail_next
        self.ambiguous_next = ambiguous_next
        self.transfers: list[tuple[str, float, str]] = []

    def transfer(self, to_address: str, amount: float) -> str:
        if not to_address:
            raise TransferFailed("No destination address")
        with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise TransferFailed("Simulated transfer rejection")
            if self.ambiguous_next > 0:
                self.ambiguous_next -= 1
                raise TransferAmbiguous("Simulated timeout after submission")
            tx_hash = "0x" + secrets.token_hex(32)
            self.transfers.append((to_address, float(amount), tx_hash))
        logger.info("transfer %.2f -> %s (%s)", amount, to_address, tx_hash)
        return tx_hash


class IdentityVerifier:
    """``is_verified(user_id) -> bool``; a gate before claim submission."""

    def is_verified(self, user_id: str) -> bool:
        raise NotImplementedError


class StaticIdentityVerifier(IdentityVerifier):
    """Verified set held in memory; ``allow_all`` turns the gate off."""

    def __init__(self, verified: Iterable[str] = (), allow_all: bool = False):
        self._verified = set(verified)
        self.allow_all = allow_all

    def mark_verified(self, user_id: str) -> None:
        self._verified.add(user_id)

    def is_verified(self, user_id: str) -> bool:
        return self.allow_all or user_id in self._verified
