import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from teampulse.api.routes import health_router, router
from teampulse.api.services import AnalysisServices, build_services
from teampulse.core.config import config
from teampulse.core.tracing_config import init_tracing
from teampulse.database.db import NeonDatabase

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("app")


def create_app(services: Optional[AnalysisServices] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_tracing()
        if app.state.services is None:
            app.state.services = await build_services(config)
        logger.info(f"TeamPulse analysis API ready (storage: {app.state.services.storage})")
        yield

        running = list(app.state.analysis_tasks)
        if running:
            logger.info(f"Cancelling {len(running)} running analyses")
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
        await NeonDatabase.dispose()

    app = FastAPI(title="TeamPulse Negotiation Analysis API", lifespan=lifespan)
    app.state.services = services
    app.state.analysis_tasks = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    app.include_router(health_router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
