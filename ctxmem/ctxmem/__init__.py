"""ctxmem - tiered context memory for long-running agent sessions."""

__version__ = "0.1.0"
