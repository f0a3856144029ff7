from contextlib import asynccontextmanager

import langsmith

from fastapi import FastAPI
from google.cloud import aiplatform
from email_precis.config import CFG
from email_precis.processing.runner import get_queue
from email_precis.routes import router
from email_precis.services.crypto import get_cipher
from email_precis.utils.logger import logger
from email_precis.utils.utils import get_version

langsmith_client = langsmith.Client()
aiplatform.init(project=CFG.project_id, location=CFG.region)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup actions
    logger.info("Starting up...")
    get_cipher()  # Fail fast on bad key material
    queue = get_queue()
    queue.start()

    yield
    # Shutdown actions
    logger.info("Shutting down...")
    await queue.shutdown()


app = FastAPI(
    title="Email Precis",
    version=get_version(),
    lifespan=lifespan,
)


app.include_router(router, prefix="/v1")
