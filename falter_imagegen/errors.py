"""Error taxonomy for falter_imagegen.

Every error carries a stable ``code`` for structured handling and the
process ``exit_code`` the CLI uses when the error ends a run. Errors that
invalidate shared setup (feed, packagesets) abort the run; toolchain and
device errors are caught at their own scope by the matrix runner.
"""

# Exit codes
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2


class ImagegenError(Exception):
    """Base error for falter_imagegen operations."""

    default_code = "imagegen_error"
    exit_code = EXIT_FATAL

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class UsageError(ImagegenError):
    """Raised when a required selector is missing or options conflict."""

    default_code = "usage_error"
    exit_code = EXIT_USAGE


class MissingToolsError(ImagegenError):
    """Raised when required host tools are not installed."""

    default_code = "missing_tools"

    def __init__(self, tools: list[str]) -> None:
        super().__init__(f"Missing required tools: {', '.join(tools)}")
        self.tools = tools


class FeedUnavailable(ImagegenError):
    """Raised when the package feed or the requested release cannot be fetched."""

    default_code = "feed_unavailable"


class MalformedFeedConfig(ImagegenError):
    """Raised when the release metadata lacks the expected keys."""

    default_code = "malformed_feed_config"


class PackagesetNotFound(ImagegenError):
    """Raised when an explicit packageset path does not exist."""

    default_code = "packageset_not_found"

    def __init__(self, path: str) -> None:
        super().__init__(f"Packageset not found: {path}")
        self.path = path


class NoPackagesetsForRelease(ImagegenError):
    """Raised when 'all' packagesets matches nothing for a release."""

    default_code = "no_packagesets"

    def __init__(self, release: str) -> None:
        super().__init__(f"No packagesets found for release {release}")
        self.release = release


class InvalidFlashSizeFile(ImagegenError):
    """Raised when the device flash-size file cannot be read or parsed."""

    default_code = "invalid_flash_file"


class RemoteIndexError(ImagegenError):
    """Raised when a remote directory index cannot be listed."""

    default_code = "remote_index_error"


class ToolchainFetchFailed(ImagegenError):
    """Raised when an Image Builder cannot be found, downloaded or prepared."""

    default_code = "toolchain_fetch_failed"


class InvalidSigningKey(ImagegenError):
    """Raised when the feed signing key is missing its expected marker."""

    default_code = "invalid_signing_key"


class DeviceBuildFailed(ImagegenError):
    """Raised when `make image` fails for one device profile."""

    default_code = "device_build_failed"

    def __init__(
        self,
        device: str,
        message: str,
        exit_code: int | None = None,
        log_path: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.device = device
        self.build_exit_code = exit_code
        self.log_path = log_path


__all__ = [
    "EXIT_FATAL",
    "EXIT_OK",
    "EXIT_USAGE",
    "DeviceBuildFailed",
    "FeedUnavailable",
    "ImagegenError",
    "InvalidFlashSizeFile",
    "InvalidSigningKey",
    "MalformedFeedConfig",
    "MissingToolsError",
    "NoPackagesetsForRelease",
    "PackagesetNotFound",
    "RemoteIndexError",
    "ToolchainFetchFailed",
    "UsageError",
]
