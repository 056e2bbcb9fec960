from typing import Optional


class DistributorError(Exception):
    """Base class for everything raised by the distributor"""

    pass


class BadConfigException(DistributorError):
    pass


class MissingEnvironmentVariableException(DistributorError):
    pass


class LedgerIntegrityError(DistributorError):
    """Raise if the ledger file does not match the expected SHA-256 hash"""

    pass


class RecipientPolicyError(DistributorError):
    """Raise if the ledger names a recipient the run is not allowed to pay"""

    pass


class EmptyLedgerError(DistributorError):
    """Raise if there is nothing to build a commitment or state from"""

    pass


class InvalidLeafError(DistributorError):
    """Raise if an (address, amount) pair cannot be packed into a fixed width leaf"""

    pass


class LedgerDivergenceError(DistributorError):
    """
    Raise if the persisted state was built from a different ledger than the one
    being reconciled. Requires an explicit resync.
    """

    def __init__(
        self,
        added: list[str],
        removed: list[str],
        changed: list[str],
        reason: Optional[str] = None,
    ):
        self.added = added
        self.removed = removed
        self.changed = changed
        reason = reason or (
            f"{len(added)} added, {len(removed)} removed, {len(changed)} changed"
        )
        super().__init__(
            f"Ledger changed since the state was built: {reason}. Re-run with resync=True"
        )


class StateLockedError(DistributorError):
    """Raise if another run holds the state file"""

    pass


class MissingStateError(DistributorError):
    """Raise if a run needs a state file that has not been synced yet"""

    pass


class InsufficientFundingError(DistributorError):
    """Raise if the distributor cannot cover the next batch"""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            f"Distributor needs funding: required {required}, available {available}, "
            f"shortfall {self.shortfall}"
        )


class SubmissionError(DistributorError):
    """Raise if the transfer entrypoint rejects or fails a batch"""

    pass


class ScanRateLimitedError(DistributorError):
    """Raise if the log scanner is still rate limited at its minimum span"""

    def __init__(self, from_block: int, to_block: int, attempts: int):
        self.from_block = from_block
        self.to_block = to_block
        self.attempts = attempts
        super().__init__(
            f"Rate limited {attempts} times at minimum span on blocks {from_block}-{to_block}"
        )
