"""
Errors raised while recovering an encrypted object
"""


class RecoveryError(Exception):
    """Base class for every failure of the decryption pipeline"""


class ResolutionError(RecoveryError):
    """The object name did not resolve to an object id"""

    def __init__(self, name, reason='object name invalid or not found'):
        self.name = name
        super().__init__(f"{name}: {reason}")


class CatalogReadError(RecoveryError):
    """A catalog row is missing or holds a value of the wrong size"""


class DecodeError(RecoveryError):
    """Decrypted bytes are not valid UTF-16"""

    HINT = 'the derived key is probably wrong (family GUID from another database?)'

    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"{reason}; {self.HINT}")
