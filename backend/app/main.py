from contextlib import asynccontextmanager
from pathlib import Path
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

# Load backend/.env as early as possible so Settings.from_env() sees the correct config.
_backend_dir = Path(__file__).resolve().parents[1]
load_dotenv(dotenv_path=_backend_dir / ".env", override=False)

from app.api import notes
from app.core.config import Settings
from app.core.logger import setup_logger
from app.services.pipeline import PipelineContext

logger = setup_logger()


def create_app(pipeline: PipelineContext | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = app.state.pipeline
        s = ctx.settings
        logger.info("Starting XHS draft relay backend...")
        logger.info(
            f"env loaded: cookie_len={len(s.cookie)}, relay_mode={s.relay_mode}, "
            f"wechat={'configured' if s.wechat_configured else 'missing'}"
        )

        yield

        logger.info("Shutting down...")
        await ctx.close()

    app = FastAPI(
        title="XHS Draft Relay",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline or PipelineContext(Settings.from_env())

    app.include_router(notes.router, prefix="/api/v1")

    # Local relay store is served from here (RELAY_MODE=local).
    settings = app.state.pipeline.settings
    if settings.relay_mode == "local":
        images_dir = Path(settings.relay_local_dir)
        images_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/images", StaticFiles(directory=str(images_dir)), name="images")

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "browser": app.state.pipeline.session.is_open}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=True)
