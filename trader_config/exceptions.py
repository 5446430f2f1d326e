"""
Custom exceptions for the trader configuration store.

The hierarchy separates fatal start-up failures (the owning process must
refuse to start) from recoverable failures that are returned to the calling
collaborator.

Usage:
    from trader_config.exceptions import (
        IntegrityError,
        NotFoundError,
        StoreTimeoutError,
    )

    try:
        store = await open_store(config)
    except (StoreConnectionError, SchemaError, IntegrityError) as e:
        # Refuse to start
        logger.error(f"Config store failed to open: {e}")
        raise
"""


class TraderConfigError(Exception):
    """Base exception for all trader configuration errors."""

    pass


# =============================================================================
# Store Errors
# =============================================================================


class StoreError(TraderConfigError):
    """Base exception for record store errors."""

    pass


class StoreConnectionError(StoreError):
    """Backend unreachable while opening the store."""

    pass


class SchemaError(StoreError):
    """A schema migration step could not be executed."""

    pass


class IntegrityError(StoreError):
    """Post-migration validation found orphaned references or implausible counts."""

    def __init__(self, message: str, violations=None):
        super().__init__(message)
        self.violations = list(violations or [])


class NotFoundError(StoreError):
    """Lookup found no matching record."""

    pass


class DuplicateError(StoreError):
    """Create against an existing unique key."""

    pass


class ConcurrencyConflict(StoreError):
    """An allocation or claim lost a race; retry the whole logical operation."""

    pass


class BetaCodeUnavailableError(ConcurrencyConflict):
    """Beta code is invalid or has already been used."""

    pass


class StoreTimeoutError(StoreError):
    """Backend call exceeded its timeout; transient, may be retried."""

    pass


# =============================================================================
# Crypto Errors
# =============================================================================


class CryptoError(TraderConfigError):
    """Encryption or decryption failure.

    Never propagates out of the vault's storage API, which degrades to
    passthrough instead.
    """

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(TraderConfigError):
    """Error in store configuration."""

    pass
