class BackendError(Exception):
    """
    Base error raised by the remote collaborators.
    """


class BackendAuthError(BackendError):
    """
    Credential refused by the backend (401, 403).
    """


class BackendNetworkError(BackendError):
    """
    Transient failure: transport error, timeout or server error.
    """


class BackendNotFoundError(BackendError):
    """
    Target does not exist (anymore).
    """


class BackendMalformedError(BackendError):
    """
    Answer that cannot be understood, in whole or in part.

    `parsed` holds the records that could be read, the others were dropped.
    """

    parsed: list

    def __init__(self, message: str, parsed: list | None = None):
        super().__init__(message)
        self.parsed = parsed or []
