"""Range-vector functions, streaming buffers and series selectors for PromQL-style evaluation."""

__version__ = "0.1.0"