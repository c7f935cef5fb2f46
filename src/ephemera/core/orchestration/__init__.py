from .callbacks import NullCallbacks, StreamCallbacks
from .loop_protection import LoopDetector
from .observation_masker import MaskingResult, MaskingStats, mask_observations
from .orchestrator import ToolOrchestrator
from .safety import ToolSafetyManager
from .schemas import OrchestrationMetrics, OrchestrationResult

__all__ = [
    "LoopDetector",
    "MaskingResult",
    "MaskingStats",
    "NullCallbacks",
    "OrchestrationMetrics",
    "OrchestrationResult",
    "StreamCallbacks",
    "ToolOrchestrator",
    "ToolSafetyManager",
    "mask_observations",
]
