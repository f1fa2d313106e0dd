"""zodforge — provider orchestration for AI-assisted schema refinement."""

__version__ = "0.4.0"
