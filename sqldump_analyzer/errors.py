"""Exception types raised by the SQL Server dump analyzer."""


class DumpAnalyzerError(Exception):
    """Base class for all analyzer errors."""


class FormatError(DumpAnalyzerError):
    """The dump file is not a valid minidump or a record is truncated."""


class BackendError(DumpAnalyzerError):
    """The debug backend could not satisfy a request."""


class NotAccessible(BackendError):
    """The requested memory range is not present in the dump."""

    def __init__(self, address: int, length: int = 0, message: str = ""):
        self.address = address
        self.length = length
        super().__init__(message or f"Memory at 0x{address:X} ({length} bytes) is not accessible")


class InvalidData(DumpAnalyzerError):
    """Data read from the dump does not make sense (null address, short read)."""


class DecodeNotImplementedError(DumpAnalyzerError, NotImplementedError):
    """No decoder exists for the requested integral width."""
