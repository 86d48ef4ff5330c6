"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from reels_factory.api import router
from reels_factory.core.settings import APP_VERSION, PATHS
from reels_factory.db.base import Base
from reels_factory.db.session import engine
from reels_factory.models import CreditAccount, LedgerEntry, Project, ProjectEvent, SubJob  # noqa: F401
from reels_factory.services.config_store import load_config, save_config
from reels_factory.services.pipeline import build_step_machine
from reels_factory.workers.queue import enqueue_step

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        PATHS.runtime_root.mkdir(parents=True, exist_ok=True)
        PATHS.artifacts_root.mkdir(parents=True, exist_ok=True)
        PATHS.workspaces_root.mkdir(parents=True, exist_ok=True)

        Base.metadata.create_all(bind=engine)

        # Ensure config file exists with defaults.
        config = load_config()
        if not PATHS.config_path.exists():
            save_config(config)
        logging.basicConfig(
            level=config.pipeline.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        machine = build_step_machine(config, dispatch=enqueue_step)
        for project_id, step, run_id, delay in machine.recover_running_steps():
            logger.info("re-dispatching step %s of %s (run %s) in %.0fs", step, project_id, run_id, delay)
            enqueue_step(project_id, step, run_id, delay=delay)

        yield

    app = FastAPI(title="Reels Factory", version=APP_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.mount("/artifacts", StaticFiles(directory=str(PATHS.artifacts_root)), name="artifacts")

    return app


app = create_app()
