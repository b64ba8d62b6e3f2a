"""Exception hierarchy shared by the call orchestration core."""


class CallBridgeError(Exception):
    """Base class for errors raised by callbridge components."""


class TransportError(CallBridgeError, ConnectionError):
    """The streaming transport could not be opened or used."""


class TranscriptionError(CallBridgeError):
    """Speech-to-text failed for one chunk."""


class BackendError(CallBridgeError):
    """The conversation backend returned an error or an unusable reply."""


class AudioDeviceError(CallBridgeError):
    """Capture or playback on the audio device failed."""
