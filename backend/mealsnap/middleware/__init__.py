"""
MealSnap Backend — Middleware Package
=======================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (execution order):
    Request → [Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    Rate limiting runs first so rejected requests cost nothing further.
"""
