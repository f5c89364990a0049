import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables from backend/.env before importing routes
BASE_DIR = Path(__file__).resolve().parent.parent  # backend/evalify -> backend
load_dotenv(BASE_DIR / ".env")

from evalify.api import deps
from evalify.api.routes import grading, quiz
from evalify.config import get_settings
from evalify.utils.logging_config import configure_logging

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Evalify Quiz Core", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.seed_file:
    seed_path = Path(settings.seed_file)
    if seed_path.exists():
        deps.quiz_service.load_seed(seed_path)
    else:
        logger.warning("Seed file %s does not exist", seed_path)

app.include_router(quiz.router, prefix="/api/quiz", tags=["quiz"])
app.include_router(grading.router, prefix="/api/grading", tags=["grading"])


@app.get("/")
def root():
    return {"message": "Evalify Quiz Core API"}


@app.get("/health")
def health():
    return {"status": "healthy"}
