from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import settings


def create_app():
    from .database import init_db
    from .logging_config import configure_logging

    configure_logging()
    init_db()

    app = FastAPI(
        title=f"{settings.PROJECT_NAME} API",
        description="API for contract renewal tracking: text extraction, clause analysis and renewal alerts",
        version="0.1.0"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from .api.routes import api_router
    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/")
    def root():
        return {
            "message": f"Welcome to {settings.PROJECT_NAME} API",
            "docs_url": "/docs",
            "ai_engine_configured": settings.ai_engine_configured,
        }

    return app
