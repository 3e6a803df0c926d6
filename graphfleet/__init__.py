"""
graphfleet — Multi-graph launcher for pipeline engines.

Brings up a fixed set of independently configured processing graphs, one
thread per graph, feeds each an initial message and waits until every graph
reports completion or the operator interrupts the run.
"""

__version__ = "1.0.0"
__author__ = "graphfleet maintainers"
