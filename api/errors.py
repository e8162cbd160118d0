class FingerprintError(Exception):
    """Base class for everything the fingerprinting core raises."""


class DecodeError(FingerprintError):
    """Input audio could not be read or is in an unsupported format."""


class ExtractionError(FingerprintError):
    """Decoded audio produced no usable landmarks (silence, too short)."""


class StorageError(FingerprintError):
    """The persistence layer failed to save or load a record."""


class ComparisonError(FingerprintError):
    """A single stored fingerprint could not be parsed or compared."""


class NotFoundError(FingerprintError):
    """A referenced match or track does not exist."""


class FingerprintCancelled(FingerprintError):
    """Fingerprinting was stopped before it finished."""
