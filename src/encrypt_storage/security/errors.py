"""Errors raised by the crypto utility layer.

Names follow the exception names of the W3C Web Crypto API so callers porting
code from a browser find the failure they expect.
"""

from encrypt_storage.core.exceptions import EncryptStorageError


class CryptoError(EncryptStorageError):
    # base class for primitive engine failures
    pass


class OperationError(CryptoError):
    # decrypt failed: wrong key, wrong nonce, corrupted data or tag mismatch
    pass


class InvalidAccessError(CryptoError):
    # key used for an operation it does not allow, or export of a non-extractable key
    pass


class NotSupportedError(CryptoError):
    # unknown algorithm, hash or key format
    pass


class DataError(CryptoError):
    # key material or algorithm parameters are malformed
    pass
