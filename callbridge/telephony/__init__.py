from callbridge.telephony.source import TelephonySource, normalize_telephony_state

__all__ = ['TelephonySource', 'normalize_telephony_state']
