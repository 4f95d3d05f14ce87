"""Exception types raised across the message bus."""

from __future__ import annotations


class HostRelayError(RuntimeError):
    """Base error for bus failures."""


class RequestDecodeError(HostRelayError):
    """Request document is not a valid batch or single-action request."""


class ActionDecodeError(HostRelayError):
    """One command carries missing or wrongly typed fields."""


class ContextError(HostRelayError):
    """Target context could not be opened or created; fatal for the request."""


class HostOperationError(HostRelayError):
    """Host rejected a domain operation."""


class AffinityError(HostRelayError):
    """Dispatcher drained from a thread other than the affinity thread."""


class LedgerLockError(HostRelayError):
    """Ledger lock could not be acquired or released."""
