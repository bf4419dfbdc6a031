"""
PaperTrade: simulated stock market core for a paper-trading platform.

Package root. A modular monolith using hexagonal architecture
(ports & adapters) with domain-driven design.

Bounded contexts:
    - market: Price simulation, market index, candle history, allocation.

Layers:
    - domain: Entities, simulation and optimization services, ports (ABCs), errors.
    - application: Use cases, DTOs, tick-cycle orchestration.
    - infrastructure: Adapters (SQL persistence, scoring) implementing domain ports.
    - interfaces: FastAPI routers, Pydantic schemas.
    - realtime: Tick scheduler and WebSocket stream.
    - shared: Cross-cutting concerns (errors, security, logging).
"""
