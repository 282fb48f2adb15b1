"""Self-healing data-integrity subsystem for the hierarchical graph store."""

__version__ = "0.1.0"
