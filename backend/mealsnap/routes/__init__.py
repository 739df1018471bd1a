# Routes package init
"""
MealSnap Backend — API Routes Package
=======================================

Route Inventory:
    - meals.py:   POST /api/meals                         (analyse a photo)
                  GET  /api/meals                         (history)
                  GET  /api/meals/{id}                    (detail)
                  GET  /api/meals/{id}/image              (stored image)
                  POST /api/meals/{id}/corrections        (apply correction)
                  GET  /api/meals/{id}/corrections        (correction history)
    - health.py:  GET  /health                            (service health check)

Routes stay thin: read the request, call MealService, return its result.
"""
