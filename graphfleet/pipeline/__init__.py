"""
pipeline — Graph supervision and fleet orchestration.

Each graph is owned by one :class:`~graphfleet.pipeline.supervisor.PipelineSupervisor`
running on its own thread; the :class:`~graphfleet.pipeline.orchestrator.Orchestrator`
fans the supervisors out, joins them, and owns the process-wide interrupt handler.
"""
