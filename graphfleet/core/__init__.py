"""
core — Configuration, constants, lifecycle state machine and run logging.

Everything here is engine-agnostic; the orchestration layer in
:mod:`graphfleet.pipeline` builds on these primitives.
"""
