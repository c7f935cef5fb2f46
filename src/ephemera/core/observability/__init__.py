from .trace import RecordingCallbacks

__all__ = ["RecordingCallbacks"]
