from mechiee.api.bookings.routes import router

__all__ = ["router"]
