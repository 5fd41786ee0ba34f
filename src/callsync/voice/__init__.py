"""Voice platform integration (Retell): outbound call placement."""

from src.callsync.voice.retell import RetellClient, format_dial_number, is_dialable

__all__ = ["RetellClient", "format_dial_number", "is_dialable"]
