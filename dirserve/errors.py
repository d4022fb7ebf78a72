"""
Error taxonomy for dirserve
"""


class FileSystemError(Exception):
    """Generic filesystem error"""
    pass


class PathTraversalError(FileSystemError):
    """Raised when a path would escape its mount root"""
    pass


class EntryNotFoundError(FileSystemError):
    """No entry exists at the resolved path"""
    pass


class ForbiddenError(FileSystemError):
    """Operation not permitted on this mount (e.g. write on a read-only mount)"""
    pass


class NotDirectoryError(FileSystemError):
    """A directory operation was attempted on a file"""
    pass


class IsDirectoryError(FileSystemError):
    """A file operation was attempted on a directory"""
    pass


class FileTooLargeError(FileSystemError):
    """File exceeds the configured archive size cap"""
    pass


class ReadFailedError(FileSystemError):
    """Reading a file failed part way"""
    pass


class SinkClosedError(FileSystemError):
    """The archive destination went away (client disconnect)"""
    pass


class ConfigError(Exception):
    """Invalid configuration"""
    pass


class RangeNotSatisfiable(FileSystemError):
    """Requested byte range lies outside the file"""
    pass


class NotRegularFileError(ForbiddenError):
    """Entry is a FIFO, socket or device rather than a regular file"""
    pass
