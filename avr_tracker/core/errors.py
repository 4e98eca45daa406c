"""Error taxonomy shared by the services.

Every error carries a ``message`` that is safe to show to the person using
the app. The API layer turns these into JSON responses; nothing here knows
about HTTP.
"""


class AppError(Exception):
    """Base class for errors that end up in front of a user."""

    default_message = "Something went wrong"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ProviderError(AppError):
    """Identity provider or backend read failed. Retry by re-invoking."""

    default_message = "Service unavailable, please try again"


class InvalidCredentials(ProviderError):
    default_message = "Incorrect email or password"


class UserNotRegistered(AppError):
    default_message = "User not found. Please contact admin for access."


class ProfileDecodeError(AppError):
    """A user document exists but could not be decoded."""

    default_message = "Your profile could not be loaded. Please contact admin."


class ValidationError(AppError):
    default_message = "Please fill in all required fields correctly."


class WriteFailure(AppError):
    default_message = "Could not save changes"


class PreconditionFailed(WriteFailure):
    """A conditional write found the document in a different state."""

    default_message = "The record was changed by someone else"


class InvalidTransition(WriteFailure):
    default_message = "Only pending expenses can be approved or rejected"


class PermissionDenied(AppError):
    default_message = "Not enough permissions"


class NotFound(AppError):
    default_message = "Not found"
