from callbridge.audio.device import AudioDevice, AudioDeviceAdapter
from callbridge.audio.pcm import chunk_audio, pcm16_to_wav, unwrap_wav

__all__ = ['AudioDevice', 'AudioDeviceAdapter', 'chunk_audio', 'pcm16_to_wav', 'unwrap_wav']
