"""Base exception shared by the balance sync components."""


class BalanceSyncError(Exception):
    """Base exception for balance sync failures."""
