"""Service layer package.

Modules are imported directly (``from .services.booking_service import
BookingService``) so schemas can depend on the pure calculator without
pulling in the whole service graph.
"""
