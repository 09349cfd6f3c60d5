"""Exceptions raised by the board persistence layer."""


class AutosaveError(RuntimeError):
    """Raised when an autosave operation ultimately fails."""


class PayloadTooLargeError(AutosaveError):
    """Raised before sending a payload that exceeds the configured size bound.

    Retrying cannot shrink the payload, so the engine does not retry it.
    """

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Payload of {size} bytes exceeds the {limit} byte limit")
        self.size = size
        self.limit = limit


class BackupError(AutosaveError):
    """Raised when the local backup medium cannot be written or cleared."""
