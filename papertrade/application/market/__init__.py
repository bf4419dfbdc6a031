"""
Application layer for the market bounded context.

Use cases coordinate domain services and ports to fulfill
query and maintenance operations. No framework or infrastructure imports allowed.
"""
