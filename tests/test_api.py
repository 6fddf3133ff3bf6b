from sqlalchemy import select

from journey_engine.models.messaging import OutboundMessage


def _trigger(subtype: str = "segment_joined", **config) -> dict:
    if subtype.startswith("segment"):
        config.setdefault("segmentId", "lapsed")
    return {"id": "t1", "type": "trigger", "subtype": subtype, "config": config}


def _action(node_id: str = "a1") -> dict:
    return {
        "id": node_id,
        "type": "action",
        "config": {
            "templateId": "winback_v1",
            "body": "Hi {{first_name}}, 20% off this week",
            "variables": [
                {"variable": "first_name", "dataSource": "customer", "property": "first_name", "fallbackValue": "there"}
            ],
        },
    }


def _create_journey(client, *, journey_id: str, nodes: list[dict], edges: list[dict], **extra) -> dict:
    res = client.post(
        "/journeys",
        json={"id": journey_id, "name": f"Journey {journey_id}", "nodes": nodes, "edges": edges, **extra},
    )
    assert res.status_code == 201, res.text
    return res.json()


def _create_and_publish(client, *, journey_id: str, nodes: list[dict], edges: list[dict], **extra) -> dict:
    _create_journey(client, journey_id=journey_id, nodes=nodes, edges=edges, **extra)
    res = client.post(f"/journeys/{journey_id}/publish")
    assert res.status_code == 200, res.text
    return res.json()


def _winback(client, journey_id: str = "j-winback") -> dict:
    return _create_and_publish(
        client,
        journey_id=journey_id,
        nodes=[_trigger(), _action(), {"id": "g1", "type": "goal", "config": {"name": "Converted"}}],
        edges=[
            {"sourceNodeId": "t1", "targetNodeId": "a1"},
            {"sourceNodeId": "a1", "targetNodeId": "g1"},
        ],
    )


def _manual_journey(client, journey_id: str, *, middle: dict) -> dict:
    return _create_and_publish(
        client,
        journey_id=journey_id,
        nodes=[_trigger("manual"), middle, {"id": "g1", "type": "goal"}],
        edges=[
            {"sourceNodeId": "t1", "targetNodeId": middle["id"]},
            {"sourceNodeId": middle["id"], "targetNodeId": "g1"},
        ],
    )


def _tick(client, **body) -> dict:
    res = client.post("/engine/tick", json=body)
    assert res.status_code == 200, res.text
    return res.json()


def test_health_endpoints(test_context):
    client, _ = test_context
    assert client.get("/health").json() == {"ok": True}
    assert client.get("/").json()["docs"] == "/docs"


def test_create_publish_and_list_journeys(test_context):
    client, _ = test_context
    draft = _create_journey(
        client,
        journey_id="j-winback",
        nodes=[_trigger(), {"id": "g1", "type": "goal"}],
        edges=[{"sourceNodeId": "t1", "targetNodeId": "g1"}],
        timezone="Europe/London",
        settings={"maxEnrollments": 500},
    )
    assert draft["status"] == "draft"
    assert draft["version"] == 0
    assert draft["settings"] == {"maxEnrollments": 500}

    published = client.post("/journeys/j-winback/publish")
    assert published.status_code == 200, published.text
    assert published.json()["status"] == "active"
    assert published.json()["version"] == 1
    assert published.json()["published_at"] is not None

    again = client.post("/journeys/j-winback/publish")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "conflict"

    _create_journey(client, journey_id="j-draft", nodes=[], edges=[])
    listing = client.get("/journeys", params={"status": "active"})
    assert listing.status_code == 200
    body = listing.json()
    assert [item["id"] for item in body["items"]] == ["j-winback"]
    assert body["pagination"]["total"] == 1
    assert body["status"] == "active"


def test_create_journey_rejects_duplicates_and_bad_timezones(test_context):
    client, _ = test_context
    _create_journey(client, journey_id="j-1", nodes=[], edges=[])
    duplicate = client.post("/journeys", json={"id": "j-1", "name": "Again"})
    assert duplicate.status_code == 409

    bad = client.post("/journeys", json={"name": "Bad tz", "timezone": "Mars/Olympus"})
    assert bad.status_code == 422
    assert bad.json()["error"]["code"] == "validation_error"

    generated = client.post("/journeys", json={"name": "No id"})
    assert generated.status_code == 201
    assert generated.json()["id"]


def test_publish_invalid_definition_lists_issues(test_context):
    client, _ = test_context
    _create_journey(
        client,
        journey_id="j-broken",
        nodes=[_trigger(), {"id": "g1", "type": "goal"}, {"id": "g2", "type": "goal"}],
        edges=[{"sourceNodeId": "t1", "targetNodeId": "g1"}],
    )
    res = client.post("/journeys/j-broken/publish")
    assert res.status_code == 422
    error = res.json()["error"]
    assert error["code"] == "validation_error"
    assert error["message"] == "Journey definition is invalid"
    assert error["details"] == [
        {
            "field": "nodes.g2",
            "message": "Node 'g2' is not reachable from the trigger",
            "type": "journey_definition",
        }
    ]
    assert client.get("/journeys/j-broken").json()["status"] == "draft"


def test_pause_edit_and_resume(test_context):
    client, _ = test_context
    _winback(client)

    locked = client.put("/journeys/j-winback", json={"name": "Renamed"})
    assert locked.status_code == 409

    paused = client.post("/journeys/j-winback/pause")
    assert paused.json()["status"] == "paused"
    edited = client.put("/journeys/j-winback", json={"name": "Win-back v2"})
    assert edited.status_code == 200
    assert edited.json()["name"] == "Win-back v2"

    empty = client.put("/journeys/j-winback", json={})
    assert empty.status_code == 422

    resumed = client.post("/journeys/j-winback/resume")
    assert resumed.json()["status"] == "active"
    assert client.post("/journeys/j-winback/resume").status_code == 409

    _create_journey(client, journey_id="j-draft", nodes=[], edges=[])
    assert client.post("/journeys/j-draft/resume").status_code == 409
    assert client.get("/journeys/missing").status_code == 404


def test_event_to_completion_through_delivery_webhook(test_context):
    client, session_local = test_context
    _winback(client)

    customer = client.put(
        "/customers/cus-1",
        json={"phone": "+15550000001", "timezone": "UTC", "attributes": {"first_name": "Ada"}},
    )
    assert customer.status_code == 200, customer.text
    assert customer.json()["attributes"] == {"first_name": "Ada"}

    ingested = client.post(
        "/events",
        json={"type": "segment_joined", "customerId": "cus-1", "payload": {"segmentId": "lapsed"}},
    )
    assert ingested.status_code == 200, ingested.text
    assert ingested.json()["enrollments_created"] == 1
    enrollment_id = ingested.json()["enrollment_ids"][0]

    first_tick = _tick(client)
    assert first_tick["claimed"] == 1
    assert first_tick["waiting"] == 1

    enrollment = client.get(f"/enrollments/{enrollment_id}").json()
    assert enrollment["status"] == "waiting"
    assert enrollment["current_node_id"] == "a1"

    with session_local() as db:
        message = db.execute(select(OutboundMessage)).scalar_one()
        assert message.content == "Hi Ada, 20% off this week"
        provider_message_id = message.provider_message_id

    webhook = client.post("/webhooks/messaging", json={"messageId": provider_message_id, "outcome": "delivered"})
    assert webhook.status_code == 200, webhook.text
    assert webhook.json() == {
        "message_id": provider_message_id,
        "outcome": "delivered",
        "recorded": True,
        "enrollment_id": enrollment_id,
    }
    # outcomes never move backward
    replay = client.post("/webhooks/messaging", json={"messageId": provider_message_id, "outcome": "delivered"})
    assert replay.json()["recorded"] is False

    second_tick = _tick(client)
    assert second_tick["completed"] == 1
    enrollment = client.get(f"/enrollments/{enrollment_id}").json()
    assert enrollment["status"] == "completed"
    assert enrollment["exit_reason"] == "goal_reached"

    activity = client.get(f"/enrollments/{enrollment_id}/activity").json()
    event_types = {item["event_type"] for item in activity["items"]}
    assert {"entered", "trigger_fired", "message_sent", "message_outcome_received", "completed"} <= event_types
    assert activity["pagination"]["total"] == len(activity["items"])

    sent = client.get("/journeys/j-winback/activity", params={"event_type": "message_sent"}).json()
    assert sent["pagination"]["total"] == 1
    assert sent["items"][0]["node_id"] == "a1"

    completed = client.get("/journeys/j-winback/enrollments", params={"status": "completed"}).json()
    assert [item["id"] for item in completed["items"]] == [enrollment_id]

    analytics = client.get("/journeys/j-winback/analytics").json()
    assert analytics["total_enrollments"] == 1
    assert analytics["by_status"]["completed"] == 1
    assert analytics["messages"] == {"delivered": 1}
    assert analytics["conversion_rate"] == 1.0
    assert analytics["nodes"]["a1"]["entered"] == 1
    assert analytics["nodes"]["a1"]["exited"] == 1


def test_duplicate_event_and_unknown_webhook(test_context):
    client, _ = test_context
    _winback(client)
    body = {
        "type": "segment_joined",
        "customerId": "cus-1",
        "payload": {"segmentId": "lapsed"},
        "occurredAt": "2026-10-18T09:00:00Z",
        "idempotencyKey": "seg-evt-1",
    }
    first = client.post("/events", json=body).json()
    second = client.post("/events", json=body).json()
    assert first["duplicate"] is False
    assert second["duplicate"] is True
    assert second["event_id"] == first["event_id"]
    assert second["enrollments_created"] == 0

    missing = client.post("/webhooks/messaging", json={"messageId": "msg-unknown", "outcome": "read"})
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"

    bad_outcome = client.post("/webhooks/messaging", json={"messageId": "msg-unknown", "outcome": "exploded"})
    assert bad_outcome.status_code == 422


def test_manual_enroll_is_idempotent_per_key(test_context):
    client, _ = test_context
    _manual_journey(
        client,
        "j-manual",
        middle={"id": "d1", "type": "delay", "subtype": "fixed_time", "config": {"duration": {"value": 1, "unit": "days"}}},
    )

    first = client.post("/journeys/j-manual/enroll", json={"customer_id": "cus-1", "idempotency_key": "support-1"})
    assert first.status_code == 200, first.text
    assert first.json()["enrolled"] is True
    assert first.json()["enrollment"]["current_node_id"] == "t1"

    again = client.post("/journeys/j-manual/enroll", json={"customer_id": "cus-1", "idempotency_key": "support-1"})
    assert again.json() == {"enrolled": False, "skipped_reason": "duplicate_trigger_event", "enrollment": None}

    client.post("/journeys/j-manual/pause")
    paused = client.post("/journeys/j-manual/enroll", json={"customer_id": "cus-2"})
    assert paused.status_code == 409


def test_skip_and_cancel_enrollment(test_context):
    client, _ = test_context
    _manual_journey(
        client,
        "j-skip",
        middle={"id": "d1", "type": "delay", "subtype": "fixed_time", "config": {"duration": {"value": 3, "unit": "days"}}},
    )
    enrollment_id = client.post("/journeys/j-skip/enroll", json={"customer_id": "cus-1"}).json()["enrollment"]["id"]
    _tick(client)
    assert client.get(f"/enrollments/{enrollment_id}").json()["current_node_id"] == "d1"

    skipped = client.post(f"/enrollments/{enrollment_id}/skip-node")
    assert skipped.status_code == 200, skipped.text
    assert skipped.json()["current_node_id"] == "g1"
    assert skipped.json()["status"] == "active"

    cancelled = client.post(f"/enrollments/{enrollment_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "exited"
    assert cancelled.json()["exit_reason"] == "manual_cancel"
    assert client.post(f"/enrollments/{enrollment_id}/cancel").json()["status"] == "exited"

    conflict = client.post(f"/enrollments/{enrollment_id}/skip-node")
    assert conflict.status_code == 409
    error = conflict.json()["error"]
    assert error["code"] == "conflict"
    assert error["details"][0]["field"] == "reason"
    assert error["details"][0]["message"] == "enrollment_terminal"

    assert client.get("/enrollments/missing").status_code == 404


def test_customer_update_resumes_attribute_wait(test_context):
    client, _ = test_context
    _manual_journey(
        client,
        "j-upgrade",
        middle={
            "id": "d1",
            "type": "delay",
            "subtype": "wait_for_attribute",
            "config": {"attributePath": "plan", "targetValue": "pro", "maxWaitTime": {"value": 7, "unit": "days"}},
        },
    )
    client.put("/customers/cus-1", json={"attributes": {"plan": "basic"}})
    enrollment_id = client.post("/journeys/j-upgrade/enroll", json={"customer_id": "cus-1"}).json()["enrollment"]["id"]
    _tick(client)
    assert client.get(f"/enrollments/{enrollment_id}").json()["status"] == "waiting"

    upgraded = client.put("/customers/cus-1", json={"attributes": {"plan": "pro"}})
    assert upgraded.json()["resumed"] == 1
    unchanged = client.put("/customers/cus-1", json={"attributes": {"plan": "pro"}})
    assert unchanged.json()["resumed"] == 0

    _tick(client)
    assert client.get(f"/enrollments/{enrollment_id}").json()["status"] == "completed"

    bad = client.put("/customers/cus-1", json={"timezone": "Nowhere/City"})
    assert bad.status_code == 422


def test_audience_preview_counts_customers(test_context):
    client, _ = test_context
    _create_journey(
        client,
        journey_id="j-preview",
        nodes=[
            _trigger(),
            {
                "id": "c1",
                "type": "condition",
                "config": {
                    "rootGroup": {
                        "conditions": [
                            {"property": "lifetime_value", "operator": "greater_than", "value": 500, "valueType": "number"}
                        ]
                    }
                },
            },
            {"id": "g1", "type": "goal"},
            {"id": "g2", "type": "goal"},
        ],
        edges=[
            {"sourceNodeId": "t1", "targetNodeId": "c1"},
            {"sourceNodeId": "c1", "sourceHandle": "true", "targetNodeId": "g1"},
            {"sourceNodeId": "c1", "sourceHandle": "false", "targetNodeId": "g2"},
        ],
    )
    client.put("/customers/cus-1", json={"attributes": {"lifetime_value": 900}})
    client.put("/customers/cus-2", json={"attributes": {"lifetime_value": 120}})
    client.put("/customers/cus-3", json={"attributes": {"lifetime_value": "unknown"}})

    preview = client.post("/journeys/j-preview/nodes/c1/audience-preview")
    assert preview.status_code == 200, preview.text
    assert preview.json() == {
        "journey_id": "j-preview",
        "node_id": "c1",
        "total": 3,
        "matched": 1,
        "unmatched": 2,
        "data_errors": 1,
    }
    assert client.post("/journeys/j-preview/nodes/g1/audience-preview").status_code == 400
    assert client.post("/journeys/j-preview/nodes/nope/audience-preview").status_code == 404


def test_audience_preview_rejects_ab_test_nodes(test_context):
    client, _ = test_context
    _create_journey(
        client,
        journey_id="j-split",
        nodes=[
            _trigger(),
            {"id": "x1", "type": "condition", "config": {"type": "ab_test", "variants": [{"id": "a"}, {"id": "b"}]}},
            {"id": "g1", "type": "goal"},
            {"id": "g2", "type": "goal"},
        ],
        edges=[
            {"sourceNodeId": "t1", "targetNodeId": "x1"},
            {"sourceNodeId": "x1", "sourceHandle": "variant:a", "targetNodeId": "g1"},
            {"sourceNodeId": "x1", "sourceHandle": "variant:b", "targetNodeId": "g2"},
        ],
    )
    assert client.post("/journeys/j-split/nodes/x1/audience-preview").status_code == 400


def test_tick_accepts_explicit_time(test_context):
    client, _ = test_context
    body = _tick(client, now="2026-10-18T12:00:00Z", limit=10)
    assert body["claimed"] == 0
    assert body["worker_id"].startswith("api-")
    assert client.post("/engine/tick", json={"limit": 0}).status_code == 422
