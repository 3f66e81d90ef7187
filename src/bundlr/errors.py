from __future__ import annotations

from typing import Optional


class BundlrError(RuntimeError):
    """Base class for failures raised by the build pipeline."""


class ResolutionError(BundlrError):
    pass


class AssetError(BundlrError):
    def __init__(self, message: str, package: Optional[str] = None):
        super().__init__(message)
        self.package = package


class NoCompatibleWheelError(AssetError):
    pass


class DownloadError(AssetError):
    pass


class HashMismatchError(AssetError):
    def __init__(self, package: str, expected: str, actual: str):
        super().__init__(f"Hash mismatch for {package}: expected {expected}, got {actual}", package=package)
        self.expected = expected
        self.actual = actual


class RuntimeEmbedError(BundlrError):
    pass


class DistributionError(RuntimeEmbedError):
    pass


class ArchiveError(RuntimeEmbedError):
    pass


class AssemblyError(BundlrError):
    pass


class StubCompileError(AssemblyError):
    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class PayloadError(AssemblyError):
    pass


class BundleMismatchError(AssemblyError):
    pass


class HttpError(BundlrError):
    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class InvalidUrlError(HttpError):
    pass


class NetworkError(HttpError):
    pass


class ServerError(HttpError):
    def __init__(self, message: str, url: str, status: int):
        super().__init__(message, url)
        self.status = status


class TooManyRetriesError(HttpError):
    def __init__(self, message: str, url: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(message, url)
        self.attempts = attempts
        self.last_error = last_error
