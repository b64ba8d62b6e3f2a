from callbridge.transport.codec import (
    MessageType,
    TransportMessage,
    build_audio_append,
    build_control,
    decode_audio,
    encode_audio,
    parse_message,
)
from callbridge.transport.session import TransportSession

__all__ = [
    'MessageType',
    'TransportMessage',
    'TransportSession',
    'build_audio_append',
    'build_control',
    'decode_audio',
    'encode_audio',
    'parse_message',
]
