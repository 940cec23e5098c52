"""effectloom - plugin loading and registration for generative effect hosts."""

__version__ = "0.1.0"
