from __future__ import annotations


class BundleError(RuntimeError):
    """Fatal condition; the launcher reports it and exits with `exit_code`."""

    exit_code: int = 1

    def __init__(self, token: str, message: str) -> None:
        super().__init__(message)
        self.token: str = token


class ManifestError(BundleError):
    def __init__(self, message: str) -> None:
        super().__init__("MANIFEST_INVALID", message)


class IntegrityError(BundleError):
    def __init__(self, message: str, *, segment: int | None = None) -> None:
        super().__init__("INTEGRITY_CHECK_FAILED", message)
        self.segment: int | None = segment


class ResourceError(BundleError):
    pass


class InsufficientSpaceError(ResourceError):
    def __init__(self, message: str, *, needed_kb: int, available_kb: int) -> None:
        super().__init__("INSUFFICIENT_SPACE", message)
        self.needed_kb: int = needed_kb
        self.available_kb: int = available_kb


class DestinationExistsError(ResourceError):
    def __init__(self, message: str) -> None:
        super().__init__("DESTINATION_EXISTS", message)


class ToolMissingError(BundleError):
    def __init__(self, tool: str) -> None:
        super().__init__("TOOL_MISSING", f"Command not found: {tool}")
        self.tool: str = tool


class ExtractionError(BundleError):
    def __init__(self, message: str, *, segment: int | None = None) -> None:
        super().__init__("EXTRACTION_FAILED", message)
        self.segment: int | None = segment


class UsageError(ValueError):
    """Malformed command line; reported with the usage text, not as a failure."""
