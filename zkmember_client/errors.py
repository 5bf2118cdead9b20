"""Error types for the membership client."""


class ZKMemberError(Exception):
    """Base error for the membership client."""


class ConfigurationError(ZKMemberError):
    """Raised when required connection parameters are missing or malformed."""


class ChainReadError(ZKMemberError):
    """Raised when the ledger is unreachable or returns inconsistent data."""


class MirrorError(ZKMemberError):
    """Raised when the persisted membership mirror cannot be read or written."""


class CommitmentNotFoundError(ZKMemberError):
    """Raised when a commitment is absent from a group snapshot."""


class UnsupportedValueError(ZKMemberError):
    """Raised when a model-update value cannot be represented exactly."""


class SubmissionError(ZKMemberError):
    """Raised when the verifier is unreachable or rejects a submission."""


class AwaitTimeoutError(ZKMemberError):
    """Raised when an expected membership event does not arrive in time."""


class DuplicateRegistrationError(ZKMemberError):
    """Raised when a wait is registered twice for the same key without fan-out."""


class ProofGenerationError(ZKMemberError):
    """Raised when the external prover fails."""
