"""
Market interface: FastAPI router, schemas and dependency wiring.
"""
