from __future__ import annotations


class GuardError(Exception):
    """Base class for brute-force guard failures."""


class StorageUnavailable(GuardError):
    """The attempt ledger could not be reached or timed out."""


class InvalidInput(GuardError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class PolicyMisconfiguration(GuardError):
    """Raised at startup for thresholds or durations that make no sense."""
