"""Client-side orchestration of SQL executions across independent workspace tabs."""

__version__ = "0.1.0"
