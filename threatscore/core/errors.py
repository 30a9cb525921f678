class ThreatScoreError(Exception):
    """Base class for all ThreatScore errors"""


class ConfigurationError(ThreatScoreError):
    """Raised at startup when the signal configuration is invalid"""


class UnknownSignalError(ThreatScoreError):
    """Raised when a settings update names a signal that does not exist"""

    def __init__(self, keys):
        self.keys = sorted(keys)
        super().__init__(f"Unknown signal key(s): {', '.join(self.keys)}")


class ProviderError(ThreatScoreError):
    """A reputation provider could not produce a usable answer"""
