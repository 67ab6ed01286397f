import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.endpoints import activities, admin, auth, rewards, users
from app.core.database import Base, engine
from app.core.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("campus_tokens")

app = FastAPI(title="Campus Token Ledger API")

# Configure CORS
origins = settings.resolved_cors_origins()
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
def startup() -> None:
    if settings.is_production and settings.jwt_secret == "dev-insecure-secret":
        raise RuntimeError("JWT_SECRET must be set in production")
    if settings.db_auto_create:
        Base.metadata.create_all(bind=engine)
    logger.info(
        "startup.ready environment=%s chain_configured=%s require_confirmed=%s",
        settings.environment,
        settings.chain_configured,
        settings.mint_require_confirmed_registration,
    )


# API Routes
app.include_router(auth.router, prefix="/api", tags=["auth"])
app.include_router(users.router, prefix="/api", tags=["users"])
app.include_router(activities.router, prefix="/api", tags=["activities"])
app.include_router(rewards.router, prefix="/api", tags=["rewards"])
app.include_router(admin.router, prefix="/api", tags=["admin"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
