"""
MealSnap Backend — Application Package
========================================

Layered architecture:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │    Services (Business Logic)        │  ← MealService orchestration,
    │                                     │    resilient recognition client
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │  Database / Cache / File storage    │  ← PostgreSQL, Redis, disk
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
