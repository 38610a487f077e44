# error taxonomy shared by the ledger, the chat registry and the store


class StickerDeskError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(StickerDeskError):
    """Malformed input, rejected before any write."""


class PermissionDenied(StickerDeskError):
    """The acting user's role does not allow the operation."""


class NotFound(StickerDeskError):
    """An expected document is absent."""


class DecodeError(StickerDeskError):
    """A document exists but its shape is not the expected one."""


class StoreError(StickerDeskError):
    """Backend failure; retryable from the user's point of view."""


class AuthError(StickerDeskError):
    """No active identity, or credentials were rejected."""
