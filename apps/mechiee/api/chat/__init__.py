from mechiee.api.chat.routes import router

__all__ = ["router"]
