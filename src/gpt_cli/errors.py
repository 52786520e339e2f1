class ChatError(Exception):
    """Base class for every error the conversation core raises."""


class TransportError(ChatError):
    """The remote call failed (network, auth, rate limit). Never retried by the core."""


class MalformedResponseError(ChatError):
    """A completion response lacks the fields a turn needs."""


class StreamProtocolError(ChatError):
    """A streamed delta could not be interpreted."""


class PersistenceError(ChatError):
    """Reading or writing a conversation document failed."""


class FormatError(ChatError):
    """A conversation document does not match the expected schema."""


class RegenerateError(ChatError):
    """There is no user/assistant exchange at the end of the log to regenerate."""
