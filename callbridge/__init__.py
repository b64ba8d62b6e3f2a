"""callbridge: answers phone calls and bridges the caller to an AI voice backend."""

__version__ = "0.1.0"
