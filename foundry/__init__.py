"""foundry: phased coding-agent orchestrator with guarded writes."""

__version__ = "0.4.0"
