"""Generate Python code from prompts, check it, and run it under supervision."""

__version__ = "0.3.0"
