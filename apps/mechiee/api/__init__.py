"""API router registration helpers.

Routers are imported lazily inside `register_routes` so importing submodules
(or collecting tests) never builds the service graph or opens a database.
"""

from fastapi import FastAPI


def register_routes(app: FastAPI) -> None:
    """Attach all API routers (lazy imports)."""
    from mechiee.api.bookings import router as bookings_router
    from mechiee.api.chat import router as chat_router
    from mechiee.api.realtime import router as realtime_router
    from mechiee.api.system import router as system_router

    routers = [
        system_router,
        bookings_router,
        chat_router,
        realtime_router,
    ]
    for router in routers:
        app.include_router(router)
