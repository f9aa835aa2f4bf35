"""
Exceptions for the encrypt_storage core module
This is placed such that there is a general error catcher
"""


class EncryptStorageError(Exception):
    # general container for errors
    pass


class ConfigurationError(EncryptStorageError):
    # raised when a storage instance is built without usable key material
    pass


class AuthenticityError(EncryptStorageError):
    # raised when a stored value fails decryption / tag verification on read
    pass


class StorageError(EncryptStorageError):
    # raised if the underlying object store fails in some way
    pass


class StorageClosedError(StorageError):
    # raised when an operation runs after close() or destroy()
    pass


class ObjectStoreNotFoundError(StorageError):
    # raised when a table does not exist in the opened database
    pass


class ObjectStoreExistsError(StorageError):
    # raised when creating a table that already exists
    pass


class VersionError(StorageError):
    # raised when a database is opened with a version lower than the stored one
    pass
