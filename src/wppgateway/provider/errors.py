"""Provider error type shared by the client and the retry policy."""


class ProviderError(Exception):
    """Provider call failed.

    Attributes:
        status_code: HTTP status, or None for transport failures.
        code: Transport error code (e.g. "ETIMEDOUT", "ECONNRESET"), if any.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    def __repr__(self) -> str:
        return f"ProviderError(status_code={self.status_code!r}, code={self.code!r})"
