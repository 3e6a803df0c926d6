"""
engine — Contract for the external pipeline engine, plus an in-process
reference implementation used for local runs and tests.
"""

from graphfleet.engine.base import EngineStatus, GraphEngine, GraphHandle
from graphfleet.engine.local import LocalGraphEngine

__all__ = ["EngineStatus", "GraphEngine", "GraphHandle", "LocalGraphEngine"]
