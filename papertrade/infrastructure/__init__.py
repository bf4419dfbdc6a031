"""
Infrastructure layer package.

Contains concrete implementations (adapters) of the ports
defined in the domain layer: SQL persistence and return scoring.
"""
