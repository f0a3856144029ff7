from typing import Optional

from langgraph.graph.state import CompiledStateGraph

from email_precis.models.queue import JobState, QueueJob
from email_precis.pipeline.graph import FETCH_NODE, pipeline_executor
from email_precis.pipeline.state import PipelineServices
from email_precis.processing.queue import Advance, ProcessingQueue
from email_precis.services import gmail, llm
from email_precis.services.credentials import CredentialGate
from email_precis.services.crypto import get_cipher
from email_precis.services.firestore import get_firestore_service
from email_precis.utils.logger import get_logger

logger = get_logger("runner")


class PipelineRunner:
    """
    Runs the per-email graph for a queue job and reports the
    Fetching -> Classifying transition as soon as the fetch node completes.
    """

    def __init__(self, services: PipelineServices, graph: CompiledStateGraph = pipeline_executor):
        self.services = services
        self.graph = graph

    async def __call__(self, job: QueueJob, advance: Advance) -> None:
        inputs = {"user_id": job.user_id, "email_id": job.email_id}
        config = {"configurable": {"services": self.services}}

        async for update in self.graph.astream(inputs, config=config, stream_mode="updates"):
            if FETCH_NODE in update:
                await advance(JobState.CLASSIFYING)


def fetch_with_token(access_token: str, email_id: str):
    return gmail.fetch_message(gmail.get_gmail_service(access_token), email_id)


def build_services() -> PipelineServices:
    store = get_firestore_service()
    cipher = get_cipher()
    return PipelineServices(
        store=store,
        gate=CredentialGate(store, cipher),
        fetch_message=fetch_with_token,
        classify=llm.classify,
        cipher=cipher,
    )


queue: Optional[ProcessingQueue] = None


def get_queue() -> ProcessingQueue:
    """Process-wide queue, wired to the live Gmail, Vertex AI and Firestore clients."""
    global queue
    if queue is None:
        queue = ProcessingQueue(runner=PipelineRunner(build_services()))
        logger.info("Processing queue created")
    return queue
