from journey_engine.schemas.common import ErrorOut


# (code, message, details, path) shown in the OpenAPI example for each status
_ERROR_EXAMPLES: dict[int, tuple[str, str, list[dict] | None, str]] = {
    400: ("bad_request", "Audience preview is only available for condition nodes", None, "/journeys/j1/nodes/a1/audience-preview"),
    404: ("not_found", "Journey not found", None, "/journeys/j1"),
    409: (
        "conflict",
        "Enrollment is already completed",
        [{"field": "reason", "message": "enrollment_terminal", "type": "reason_code"}],
        "/enrollments/e1/skip-node",
    ),
    422: (
        "validation_error",
        "Journey definition is invalid",
        [{"field": "nodes.g2", "message": "Node 'g2' is not reachable from the trigger", "type": "journey_definition"}],
        "/journeys/j1/publish",
    ),
    500: ("internal_error", "Internal server error", None, "/engine/tick"),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message, details, path = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error", None, "/"))
        error = {"code": code, "message": message, "request_id": "request-id", "path": path, "details": details}
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {"application/json": {"example": {"error": error}}},
        }
    return responses
