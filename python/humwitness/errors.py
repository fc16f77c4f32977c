"""Exception types for humwitness.

Per-peer failures (connection, timeout, bad signature, malformed data) are
recoverable and absorbed inside the transport and coordinator. Only
``AudioTooShortError`` and ``InsufficientReportsError`` are meant to reach
callers of the pipeline.
"""


class HumWitnessError(Exception):
    """Base class for all humwitness errors."""


class AudioTooShortError(HumWitnessError, ValueError):
    """Recording is shorter than the minimum analysable duration."""

    def __init__(self, duration: float, min_duration: float):
        self.duration = duration
        self.min_duration = min_duration
        super().__init__(
            f"Audio must be at least {min_duration:g} seconds long "
            f"(got {duration:.2f}s)"
        )


class PeerConnectionError(HumWitnessError, ConnectionError):
    """A peer could not be connected to, or the connection was lost."""

    def __init__(self, peer_id: str, reason: str):
        self.peer_id = peer_id
        self.reason = reason
        super().__init__(f"Connection to peer {peer_id} failed: {reason}")


class PeerTimeoutError(HumWitnessError, TimeoutError):
    """A peer did not answer before its deadline."""

    def __init__(self, peer_id: str, timeout: float):
        self.peer_id = peer_id
        self.timeout = timeout
        super().__init__(f"Peer {peer_id} did not respond within {timeout:g}s")


class InvalidSignatureError(HumWitnessError):
    """A message or report failed signature verification."""

    def __init__(self, sender_id: str, what: str = "message"):
        self.sender_id = sender_id
        super().__init__(f"Invalid signature on {what} from {sender_id}")


class MalformedMessageError(HumWitnessError, ValueError):
    """Wire data could not be decoded."""


class InsufficientReportsError(HumWitnessError):
    """Too few peer reports to aggregate."""

    def __init__(self, count: int, required: int):
        self.count = count
        self.required = required
        super().__init__(f"Insufficient peer reports: {count} < {required}")
