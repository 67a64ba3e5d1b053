"""SciReason - structured scientific reasoning over LLM step pipelines."""

__version__ = "0.1.0"
