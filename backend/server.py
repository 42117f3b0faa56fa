import os
import sys
import logging
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# -----------------------------
# Load environment
# -----------------------------
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

# IMPORTANT:
# Playwright needs PLAYWRIGHT_BROWSERS_PATH set BEFORE any Playwright import.
# In this container we mount browsers at /pw-browsers.
# On Windows/local setups, forcing /pw-browsers breaks Playwright's default cache
# location and causes: "Executable doesn't exist at \\pw-browsers\\...".
# So we only set it when /pw-browsers exists (container).
if not os.environ.get("PLAYWRIGHT_BROWSERS_PATH") and os.path.exists("/pw-browsers"):
    os.environ["PLAYWRIGHT_BROWSERS_PATH"] = "/pw-browsers"

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
SHUTDOWN_TIMEOUT_SECONDS = int(os.environ.get("SHUTDOWN_TIMEOUT_SECONDS", "10"))

# -----------------------------
# Logging
# -----------------------------
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

from routes.browser import router as browser_router, session_manager  # noqa: E402


# -----------------------------
# Lifespan: cleanup only
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Backend startup complete (browsers launch lazily on start-session).")
    yield

    # uvicorn has already stopped listening by the time we get here.
    try:
        count = len(session_manager.sessions)
        await session_manager.cleanup()
        logger.info(f"Browser sessions cleaned up ({count}).")
    except Exception as e:
        logger.warning(f"Browser session cleanup failed: {e}")


# -----------------------------
# FastAPI app
# -----------------------------
app = FastAPI(lifespan=lifespan)


@app.get("/")
async def root():
    return {"status": "ok", "sessions": len(session_manager.sessions)}


app.include_router(browser_router, prefix="/api")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def main():
    logger.info(f"Server running on {HOST}:{PORT}")
    try:
        uvicorn.run(
            app,
            host=HOST,
            port=PORT,
            log_level=LOG_LEVEL.lower(),
            timeout_graceful_shutdown=SHUTDOWN_TIMEOUT_SECONDS,
        )
    except OSError as e:
        logger.error(f"Server failed to start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
