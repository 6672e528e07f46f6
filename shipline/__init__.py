"""shipline: release pipeline orchestrator with retry, quality gates and rollback."""

__version__ = "0.1.0"
