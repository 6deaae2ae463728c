from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException

from config import Settings, get_settings
from db_models import IdentifyRequest, FinalResponse
from db_setup import init_db
from errors import DataIntegrityError, StoreError, ValidationError
from logging_config import setup_logging
from reconciliation import ContactReconciler

logger = structlog.get_logger()


def create_app(settings: Optional[Settings] = None, reconciler: Optional[ContactReconciler] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)

    reconciler = reconciler or ContactReconciler(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(settings.database_path)
        yield

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.reconciler = reconciler

    @app.get("/")
    async def root():
        return {"message": "Bitespeed API is up"}

    # sync on purpose: the store is blocking sqlite, FastAPI runs this in a threadpool
    @app.post("/identify", response_model=FinalResponse)
    def identify(request: IdentifyRequest):
        try:
            view = reconciler.identify(request.email, request.phoneNumber)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.message) from exc
        except DataIntegrityError as exc:
            logger.error("identify_integrity_error", error=exc.message)
            raise HTTPException(status_code=500, detail="Internal Server Error") from exc
        except StoreError as exc:
            if exc.retryable:
                raise HTTPException(status_code=503, detail="Database is busy, try again") from exc
            raise HTTPException(status_code=500, detail="Internal Server Error") from exc

        return FinalResponse(contact=view)

    return app


# served by `uvicorn main:app`; the Contact table is created on startup
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
