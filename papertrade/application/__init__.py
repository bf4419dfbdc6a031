"""
Application layer package.

Contains use cases that orchestrate domain logic, and the tick-cycle
service that owns live market state.
This layer depends on domain ports, never on infrastructure.
"""
