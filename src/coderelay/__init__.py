"""coderelay: multi-phase, rate-budgeted LLM code generation."""

__version__ = "0.1.0"
