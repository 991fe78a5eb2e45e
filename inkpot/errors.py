"""
Exception types shared by the persistence, rendering and session layers.

The web layer maps each of them to a status code in ``inkpot.blog``.
"""


class BlogError(Exception):
    """Base class for every error raised on purpose by inkpot."""

    #: message that is safe to show to a visitor
    public_message = "Something went wrong."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)


class ConfigError(BlogError):
    public_message = "Invalid configuration."


class ValidationError(BlogError):
    """Bad input shape; the message is meant for the person who sent it."""

    public_message = "Invalid input."

    def __init__(self, message: str | None = None, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFound(BlogError):
    public_message = "Not found."


class AuthError(BlogError):
    # deliberately identical for unknown user and wrong password
    public_message = "Invalid credentials."

    def __init__(self):
        super().__init__(self.public_message)


class Unauthorized(BlogError):
    public_message = "Login required."


class PersistenceError(BlogError):
    """The database could not complete an operation."""

    public_message = "The database is having trouble right now."

    def __init__(self, message: str | None = None, *, operation: str = "", ident=None):
        super().__init__(message)
        self.operation = operation
        self.ident = ident


class ServiceUnavailable(PersistenceError):
    """A database operation timed out or the pool was exhausted."""

    public_message = "The service is temporarily unavailable."


class RenderError(BlogError):
    public_message = "Could not render content."
