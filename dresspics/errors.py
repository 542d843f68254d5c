class DressPicsError(Exception):
    """Base class for errors raised by the image pipeline."""


class ManifestError(DressPicsError):
    """The manifest could not be parsed or does not have the expected shape."""


class EncodeError(DressPicsError):
    """A single resize/encode operation failed."""

    def __init__(self, message: str, width: int = 0):
        super().__init__(message)
        self.width = width


class EncoderUnavailable(DressPicsError):
    """The requested codec back-end cannot be used on this machine."""


class StorageError(DressPicsError):
    """The object store refused or failed a request."""
