"""GenAI gateway: one async call shape over several LLM providers."""

__version__ = "1.0.0"
