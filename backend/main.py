from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
import os
import threading
import logging

from backend.database.client import init_tables
from backend.intelligence.write_queue import start_write_worker, stop_write_worker
from backend.intelligence import embedder
from backend.routers import intelligence, messages
from backend.config import load_config

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

app = FastAPI(title="Unmask Intelligence API", version=VERSION)


def _trusted_hosts() -> list[str]:
    defaults = ["127.0.0.1", "localhost", "testserver"]
    env_hosts = str(os.environ.get("UNMASK_TRUSTED_HOSTS") or "").strip()
    if not env_hosts:
        return defaults
    hosts = [h.strip() for h in env_hosts.split(",") if h.strip()]
    return hosts or defaults

# ─── Trusted Host Guard ───────────────────────────────────────────────────────
app.add_middleware(TrustedHostMiddleware, allowed_hosts=_trusted_hosts())

# ─── CORS ───────────────────────────────────────────────────────────────────
origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:8787",
    "http://127.0.0.1:8787",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Model Warmup ─────────────────────────────────────────────────────────────
def _warmup_local_model(model_name: str):
    try:
        embedder.get_model(model_name)
        logger.info(f"Local embedding model {model_name} loaded and ready")
    except Exception as e:
        logger.error(f"Local embedding model warmup failed, fallback embeddings will be used: {e}")


# ─── Startup ──────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup_event():
    # 1. Config file with defaults merged in
    load_config(force_reload=True)

    # 2. Initialize DB tables
    init_tables()

    # 3. Start the async write queue
    await start_write_worker()

    # 4. Load a local embedding model in the background (non-blocking)
    runtime = embedder.resolve_runtime()
    if runtime["provider"] == "local":
        threading.Thread(
            target=_warmup_local_model,
            args=(runtime["local_model"],),
            daemon=True,
            name="unmask-warmup",
        ).start()


@app.on_event("shutdown")
async def shutdown_event():
    await stop_write_worker()

# ─── Routers ──────────────────────────────────────────────────────────────────
app.include_router(intelligence.router)
app.include_router(messages.router)

# ─── Health Endpoint ──────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    runtime = embedder.resolve_runtime()
    provider = runtime["provider"]
    if provider == "local":
        embedding_status = embedder.get_status()
    elif provider == "openai" and runtime["api_key"]:
        embedding_status = "ready"
    else:
        embedding_status = "fallback"
    return {
        "status": "ok",
        "version": VERSION,
        "embedding_provider": provider,
        "embedding_status": embedding_status,
    }

# ─── Entry Point ──────────────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("UNMASK_PORT", 8787))
    uvicorn.run(app, host="127.0.0.1", port=port, log_level="info")
