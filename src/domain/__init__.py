"""Domain models and types for FX quote updates.

This package contains in-memory (Pydantic) models describing quote updates,
the pair validator and the error kinds reported to callers. They are
independent from persistence models so that business logic and testing can
evolve without DB coupling.
"""

__all__ = [
    "errors",
    "quotes",
    "validation",
]
