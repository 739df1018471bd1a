# Services package init
"""
MealSnap Backend — Services Layer
===================================

Service Inventory:
    - CircuitBreaker: rolling-window breaker around one remote dependency
    - retry_with_backoff: exponential-backoff retry helper (tenacity)
    - MealDetector (abstract): meal recognition contract
    - MealDetectionService: HTTP client for the recognition service
    - validate_detection_response: schema check for recognition payloads
    - format_meal_for_correction: breakdown text sent with corrections
    - ImageService: size-budgeted JPEG re-encoding (Pillow)
    - FileService: upload validation and image storage
    - MealCacheService: Redis cache for meal details
    - MealService: orchestrates analyse / read / correct workflows
"""
