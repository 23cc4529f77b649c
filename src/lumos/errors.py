"""Error taxonomy shared by the session manager, storage and gateway layers."""


class LumosError(Exception):
    """Base class for all errors raised by lumos."""


class InvalidArgumentError(LumosError, ValueError):
    """A caller broke a precondition that can be checked up front."""


class NotFoundError(LumosError, LookupError):
    """A referenced session or message does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class GatewayError(LumosError):
    """The generation backend rejected or failed a request."""


class GatewayUnavailableError(GatewayError, ConnectionError):
    """The generation backend is not reachable."""
