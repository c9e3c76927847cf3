"""
Error taxonomy for the voice loop.

DeviceUnavailable and CollaboratorLoadError are fatal to their subsystem and
surface as a persistent error state. DecodeFailure and synthesis runtime errors
are recovered locally. A full playback queue is not an error: the oldest entry
is dropped and logged.
"""


class VoiceLoopError(Exception):
    """Base class for voice loop errors."""
    pass


class DeviceUnavailable(VoiceLoopError):
    """The capture (or playback) device is missing, busy or access was denied."""
    pass


class DecodeFailure(VoiceLoopError):
    """Buffered audio could not be decoded into samples."""
    pass


class CollaboratorLoadError(VoiceLoopError):
    """A model or service failed to initialize."""

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class CollaboratorRuntimeError(VoiceLoopError):
    """A request to a model or service failed mid-flight."""

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
