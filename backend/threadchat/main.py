import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from threadchat.api.routes import chat, settings

logging.basicConfig(level=logging.INFO)

app = FastAPI(title="ThreadChat API")

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"http://localhost:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router, prefix="/api", tags=["chat"])
app.include_router(settings.router, prefix="/api", tags=["settings"])


@app.get("/api/health", tags=["health"])
async def health():
    return {"status": "ok"}


@app.on_event("startup")
async def apply_saved_settings():
    """Apply user settings from JSON file on startup if it exists."""
    from threadchat.api.routes.settings import _load_settings, _apply_settings, SETTINGS_FILE
    if SETTINGS_FILE.exists():
        _apply_settings(_load_settings())


@app.on_event("startup")
async def load_thread_cache():
    """Load the local thread cache so earlier sessions are listed."""
    from threadchat.services.thread_cache import get_thread_cache
    cache = get_thread_cache()
    logging.getLogger(__name__).info("Thread cache ready with %d thread(s)", len(cache.ids()))
