import json
from pathlib import Path

from journey_engine.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_error_responses_are_documented():
    publish = app.openapi()["paths"]["/journeys/{journey_id}/publish"]["post"]
    assert {"404", "409", "422"} <= set(publish["responses"].keys())
