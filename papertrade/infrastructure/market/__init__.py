"""
Infrastructure adapters for the market bounded context.

Each adapter implements a domain port (ABC) and connects
to external systems: databases and return scoring.
"""
