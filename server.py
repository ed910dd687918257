from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import os

from dotenv import load_dotenv

# Load environment variables early so downstream modules see them
load_dotenv()
# Then overlay .env.local if present (does not override already-set envs)
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env.local"), override=False)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

from src.database import models, database
from src.agentdesk.orchestration.errors import RateLimitExceeded
from src.api import agents as agents_router
from src.api import chat as chat_router
from src.api import conversations as conversations_router
from src.api import metrics as metrics_router
from src.api import usage as usage_router

# --- App Lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    # On startup: initialize database tables
    async with database.engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    logger.info("Database ready at %s", database.DATABASE_URL.split("@")[-1])
    yield
    # On shutdown
    await database.engine.dispose()

# --- Main App Setup ---
app = FastAPI(title="agentdesk", lifespan=lifespan)

# CORS for local dev (Vite at 5173)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(chat_router.router)
app.include_router(agents_router.router)
app.include_router(conversations_router.router)
app.include_router(usage_router.router)
app.include_router(metrics_router.router)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content=exc.to_payload())


# --- Health Check ---
@app.get("/api/health")
async def health():
    llm_configured = bool(os.getenv("AGENTDESK_GATEWAY_TOKEN") and os.getenv("AGENTDESK_GATEWAY_URL"))
    return {
        "status": "ok",
        "llmConfigured": llm_configured,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")), reload=False)
