"""BuildGate - leased, quota-gated code-generation job pipeline."""

__version__ = "0.1.0"
