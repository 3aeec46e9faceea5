"""Error taxonomy for the dispatch and discovery layers.

Every error carries the HTTP status the server maps it to.
``TemperatureUnsupported`` never leaves the Dispatcher.
"""


class RelayError(Exception):
    """Base error for all relay failures surfaced at the request boundary."""

    status_code: int = 500

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__doc__ or "Relay error"
        super().__init__(self.message)


class MissingCredential(RelayError):
    """No upstream API key is configured."""

    status_code = 400

    def __init__(self, message: str = "OPENAI_API_KEY not set on server") -> None:
        super().__init__(message)


class TemperatureUnsupported(RelayError):
    """The upstream rejected the temperature parameter for a model."""

    def __init__(self, model: str, detail: str = "") -> None:
        self.model = model
        self.detail = detail
        msg = f"Temperature not supported for model: {model}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class UpstreamCallFailure(RelayError):
    """The upstream rejected a chat call."""

    def __init__(self, message: str, path: str = "") -> None:
        self.path = path
        super().__init__(message or "Unknown upstream error")


class UpstreamUnavailable(RelayError):
    """The model catalogue could not be fetched and no cached copy exists."""

    status_code = 502

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        msg = "Model catalogue unavailable"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class NoReplyProduced(RelayError):
    """Both call paths finished without producing reply text."""

    def __init__(self, model: str) -> None:
        self.model = model
        super().__init__(f"No reply produced by model: {model}")


class InvalidInput(RelayError):
    """A storage request was missing a required field."""

    status_code = 400


class StorageFailure(RelayError):
    """A prompt or conversation file could not be written."""

    status_code = 500
