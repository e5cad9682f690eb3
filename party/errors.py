class PartyError(Exception):
    """Base class for watch party errors."""


class TransportError(PartyError):
    """A peer transport or channel could not carry a message."""


class PeerUnavailableError(TransportError):
    """The requested peer id is not reachable, or already taken when registering."""

    def __init__(self, peer_id: str, reason: str = "peer-unavailable"):
        super().__init__(f"{reason}: {peer_id}")
        self.peer_id = peer_id
        self.reason = reason


class PlaybackRejected(PartyError):
    """The player refused a command, e.g. autoplay blocked by the environment."""
