import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from journey_engine.core.errors import ConfigurationError
from journey_engine.models.journey import Journey, JourneyVersion
from journey_engine.services.journey_graph import JourneyGraph, compile_journey, load_published_graph


def published_graph(db: Session, *, journey_id: str, version: int) -> JourneyGraph:
    row = db.execute(
        select(JourneyVersion).where(
            JourneyVersion.journey_id == journey_id,
            JourneyVersion.version == version,
        )
    ).scalar_one_or_none()
    if row is None:
        raise ConfigurationError(f"Journey '{journey_id}' has no published version {version}")
    return load_published_graph(journey_id, version, row.definition_json)


def publish_journey(db: Session, journey: Journey, *, now: datetime) -> JourneyVersion:
    """Validate the draft definition and freeze it as the next published version.

    Raises JourneyValidationError listing every problem; nothing is written in that case.
    """
    compile_journey(journey.definition_json)
    journey.version = int(journey.version or 0) + 1
    journey.status = "active"
    journey.published_at = now
    snapshot = JourneyVersion(
        id=str(uuid.uuid4()),
        journey_id=journey.id,
        version=journey.version,
        definition_json=journey.definition_json,
        published_at=now,
    )
    db.add(snapshot)
    return snapshot


def active_journeys(db: Session) -> list[Journey]:
    return list(
        db.execute(
            select(Journey)
            .where(Journey.status == "active", Journey.version > 0)
            .order_by(Journey.created_at.asc(), Journey.id.asc())
        ).scalars().all()
    )


def max_enrollments(journey: Journey) -> int | None:
    settings_json = journey.settings_json if isinstance(journey.settings_json, dict) else {}
    value = settings_json.get("maxEnrollments", settings_json.get("max_enrollments"))
    if value is None:
        return None
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return None
    return limit if limit > 0 else None
