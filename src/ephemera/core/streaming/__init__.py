from .json_buffer import JsonBuffer
from .json_extraction import ClassifiedResponse, extract_balanced_json, extract_json_from_response
from .response_handler import ResponseHandler, StreamState

__all__ = [
    "ClassifiedResponse",
    "JsonBuffer",
    "ResponseHandler",
    "StreamState",
    "extract_balanced_json",
    "extract_json_from_response",
]
