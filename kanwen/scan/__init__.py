"""
Scan Module

Live scan loop and scan history.
"""

from kanwen.scan.history import ScanHistory, ScanResult
from kanwen.scan.orchestrator import FrameSource, ScanConfig, ScanOrchestrator, ScanStatus

__all__ = [
    "ScanHistory",
    "ScanResult",
    "FrameSource",
    "ScanConfig",
    "ScanOrchestrator",
    "ScanStatus",
]
