"""
ffubuilder - Build Windows FFU images on Hyper-V or VMware Workstation.

Prepares a virtual disk, optionally boots a VM to run an install workload,
captures the result to an FFU with DISM and tears down everything it
created, whether the build succeeds, fails or is cancelled.
"""

__version__ = "0.3.0"

from ffubuilder.config import BuildDefinition, BuildSettings
from ffubuilder.controller import BuildController, BuildReport
from ffubuilder.orchestrator import BuildOrchestrator, BuildPhase, BuildResult

__all__ = [
    "BuildController",
    "BuildDefinition",
    "BuildOrchestrator",
    "BuildPhase",
    "BuildReport",
    "BuildResult",
    "BuildSettings",
    "__version__",
]
