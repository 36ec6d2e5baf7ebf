"""Integration tests that drive ``python -m shipline`` in a subprocess."""
