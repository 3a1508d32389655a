"""Exceptions raised by file records and decoders."""


class FabioFileError(RuntimeError):
    """Base class for all fabioview errors."""


class NotFoundError(FileNotFoundError, FabioFileError):
    """The file backing a record does not exist."""


class DecodeError(FabioFileError):
    """The decoder failed to read a header or an image."""


class KeyNotFoundError(FabioFileError, KeyError):
    """A header key is absent after the header was loaded."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return RuntimeError.__str__(self)
