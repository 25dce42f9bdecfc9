"""Code execution: mode selection, dependency planning, supervision and isolation."""
