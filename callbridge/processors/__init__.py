from callbridge.processors.base import TurnHost, TurnProcessor, create_turn_processor
from callbridge.processors.backends import (
    BackendReply,
    ConversationBackend,
    HttpConversationBackend,
    Transcriber,
    WhisperTranscriber,
)

__all__ = [
    'TurnHost',
    'TurnProcessor',
    'create_turn_processor',
    'BackendReply',
    'ConversationBackend',
    'HttpConversationBackend',
    'Transcriber',
    'WhisperTranscriber',
]
