import sys, os, uvicorn, logging
from contextlib import asynccontextmanager
from typing import Optional, Protocol, cast

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config.settings import settings
from repositories import proposal_repo, solicitation_repo, vendor_repo
from services.extraction_client import ExtractionClient
from services.ingestion_orchestrator import IngestionOrchestrator
from services.job_tracker import InMemoryJobStore, JobTracker
from services.mailbox_gateway import ImapMailboxGateway
from api.routers import health, proposals, solicitations, vendors

LOG_DIR = os.path.join(os.path.dirname(__file__), '..', 'logs')
os.makedirs(LOG_DIR, exist_ok=True)
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                    handlers=[logging.StreamHandler(), logging.FileHandler(os.path.join(LOG_DIR, "procwise.log"))])
logger = logging.getLogger(__name__)


class ProcwiseAppState(Protocol):
    extraction_client: Optional[ExtractionClient]
    orchestrator: Optional[IngestionOrchestrator]
    job_tracker: Optional[JobTracker]


def init_schemas() -> None:
    # proposals reference both other tables
    solicitation_repo.init_schema()
    vendor_repo.init_schema()
    proposal_repo.init_schema()


def build_job_tracker(orchestrator: IngestionOrchestrator) -> JobTracker:
    return JobTracker(orchestrator.run, InMemoryJobStore(settings.job_retention_limit))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("API starting up...")
    state = cast(ProcwiseAppState, app.state)
    try:
        init_schemas()
        extraction_client = ExtractionClient()
        orchestrator = IngestionOrchestrator(
            ImapMailboxGateway.from_settings(settings),
            extraction_client,
        )
        state.extraction_client = extraction_client
        state.orchestrator = orchestrator
        state.job_tracker = build_job_tracker(orchestrator)
        logger.info(
            "System initialized successfully (models: %s).",
            ", ".join(extraction_client.models),
        )
    except Exception as e:
        logger.critical(f"FATAL: System initialization failed: {e}", exc_info=True)
        state.extraction_client = None
        state.orchestrator = None
        state.job_tracker = None
    yield
    state.job_tracker = None
    state.orchestrator = None
    state.extraction_client = None
    logger.info("API shutting down.")

app = FastAPI(title="ProcWise Proposal Intake API", version="1.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

app.include_router(health.router)
app.include_router(proposals.router)
app.include_router(solicitations.router)
app.include_router(vendors.router)

@app.get("/", tags=["General"])
def read_root(): return {"message": "Welcome to the ProcWise Proposal Intake API"}

if __name__ == "__main__":
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
