"""
Librarian error types.

Every error raised on purpose by the pipeline derives from LibrarianError.
The message of an error carries diagnostic detail for the server log; only
``user_message``, a fixed text per error family, is shown to the end user.
Anything that is not a LibrarianError is reported as an internal error.
"""


class LibrarianError(Exception):
    """Base error for the Librarian pipeline."""

    public_message = "Internal error"

    @property
    def user_message(self) -> str:
        return self.public_message


class RequestValidationError(LibrarianError):
    """The incoming request is missing a required field."""

    @property
    def user_message(self) -> str:
        # Validation messages only name request fields
        return str(self)


class StoreError(LibrarianError):
    """Error communicating with the configuration/corpus/conversation store."""

    public_message = "Could not load the conversation"


class EmbeddingError(LibrarianError):
    """The query could not be embedded."""

    public_message = "Could not vectorize the question"


class RetrievalError(LibrarianError):
    """The hybrid search procedure failed."""

    public_message = "Document search failed"


class GenerationError(LibrarianError):
    """A generation path failed (transport, quota, timeout, malformed stream)."""

    public_message = "Answer generation failed"


class ContextCacheError(LibrarianError):
    """Uploading a file or building a remote context failed."""

    public_message = "Document preparation failed"
