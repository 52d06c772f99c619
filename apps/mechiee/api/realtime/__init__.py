from mechiee.api.realtime.routes import router

__all__ = ["router"]
