"""
Generation Pipeline

  Submission - idempotent on run_id, credits reserved before a job exists
  Processing - multi-tier provider fallback, bounded polling, upload
  Stories    - one still per shot, composed into a cross-faded video
"""

from .models import JobKind, JobStatus
from .orchestrator import GenerationService, SubmitOutcome
from .routes import credits_router, jobs_router

__all__ = [
    "GenerationService",
    "SubmitOutcome",
    "jobs_router",
    "credits_router",
    "JobKind",
    "JobStatus",
]
