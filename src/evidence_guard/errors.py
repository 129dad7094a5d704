"""Exception hierarchy for the evidence guard pipeline."""


class EvidenceGuardError(Exception):
    """Base evidence guard exception."""


class ModelLoadError(EvidenceGuardError):
    """A model could not be loaded; the owning service stays in fallback mode."""


class InferenceError(EvidenceGuardError):
    """A loaded model raised while running inference."""


class ExtractionTimeout(EvidenceGuardError, TimeoutError):
    """An OCR job did not finish within its deadline."""


class InputValidationError(EvidenceGuardError, ValueError):
    """Malformed input that callers are expected to handle."""


class UnsupportedInputType(InputValidationError):
    """The input is neither a decodable image nor UTF-8 text."""


class CacheError(EvidenceGuardError):
    """A cache backend failed. Callers treat this as a miss."""


class OverrideDisabledError(EvidenceGuardError):
    """A manual override was requested while overrides are turned off."""


class ScanInProgressError(EvidenceGuardError):
    """A scan was started while another session is still running."""
