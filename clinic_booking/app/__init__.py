from fastapi import FastAPI, Request
from .errors import BookingError


def create_app() -> FastAPI:
    app = FastAPI(title="Clinic booking")

    from .routes import router as main_router, error_response
    app.include_router(main_router)

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        return error_response(exc.kind, exc.detail)

    return app
