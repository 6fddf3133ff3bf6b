from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from journey_engine.core.api_docs import error_responses
from journey_engine.core.deps import get_db
from journey_engine.core.id_utils import generate_worker_id
from journey_engine.schemas.engine import EngineTickIn, EngineTickOut
from journey_engine.services.engine import EngineScheduler

router = APIRouter(prefix="/engine", tags=["engine"])


@router.post(
    "/tick",
    response_model=EngineTickOut,
    summary="Run one engine tick synchronously",
    responses=error_responses(422, 500),
)
def run_tick(payload: EngineTickIn | None = None, db: Session = Depends(get_db)):
    payload = payload or EngineTickIn()
    scheduler = EngineScheduler(worker_id=generate_worker_id("api"))
    summary = scheduler.tick(db, now=payload.now, limit=payload.limit)
    return EngineTickOut(worker_id=scheduler.worker_id, **asdict(summary))
