"""
WinPEForge Pipeline - Build orchestration.
"""

from winpeforge.pipeline.orchestrator import BuildPipeline, update_custom_wim_with_pwsh7
from winpeforge.pipeline.tasks import InjectRuntimeTask, OptimizeMediaTask

__all__ = [
    "BuildPipeline",
    "InjectRuntimeTask",
    "OptimizeMediaTask",
    "update_custom_wim_with_pwsh7",
]
