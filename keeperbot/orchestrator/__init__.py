"""
Orchestrator package - the keeper and feeder control loops.
"""

from keeperbot.orchestrator.feeder_loop import BatchResult, FeederConfig, FeederLoop, ShockSpec
from keeperbot.orchestrator.keeper_loop import CycleResult, KeeperConfig, KeeperLoop, KeeperState

__all__ = [
    "BatchResult",
    "FeederConfig",
    "FeederLoop",
    "ShockSpec",
    "CycleResult",
    "KeeperConfig",
    "KeeperLoop",
    "KeeperState",
]
