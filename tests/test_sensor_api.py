from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

SENSOR_URL = "/api/sensors/sensor-data"


def _payload(**overrides) -> dict:
    body = {
        "device_id": "sensor-001",
        "timestamp": "2025-12-26T20:00:00Z",
        "temperature": 25.5,
        "humidity": 60,
        "battery": 85,
    }
    body.update(overrides)
    return body


def _fields(response) -> set[str]:
    return {detail["field"] for detail in response.json()["details"]}


def test_new_reading_returns_created(api_client: TestClient) -> None:
    response = api_client.post(SENSOR_URL, json=_payload())

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "New record created"
    assert body["id"] == body["data"]["id"]
    assert body["data"]["deviceId"] == "sensor-001"
    assert body["data"]["temperature"] == 25.5
    assert body["data"]["humidity"] == 60
    assert body["data"]["battery"] == 85
    assert body["data"]["raw"] is None
    assert body["data"]["timestamp"].startswith("2025-12-26T20:00:00")
    assert body["data"]["createdAt"]


def test_repeated_submission_returns_existing_record(api_client: TestClient) -> None:
    first = api_client.post(SENSOR_URL, json=_payload())
    second = api_client.post(SENSOR_URL, json=_payload())

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["message"] == "Record already exists"
    assert second.json()["id"] == first.json()["id"]

    listing = api_client.get(SENSOR_URL, params={"device_id": "sensor-001"})
    assert listing.json()["count"] == 1


def test_first_write_wins_for_conflicting_values(api_client: TestClient) -> None:
    first = api_client.post(SENSOR_URL, json=_payload(temperature=25.5))
    second = api_client.post(SENSOR_URL, json=_payload(temperature=31.0, humidity=10))

    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["data"]["temperature"] == 25.5
    assert second.json()["data"]["humidity"] == 60


def test_same_instant_in_another_offset_is_a_duplicate(api_client: TestClient) -> None:
    first = api_client.post(SENSOR_URL, json=_payload())
    second = api_client.post(SENSOR_URL, json=_payload(timestamp="2025-12-26T22:00:00+02:00"))

    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]


def test_different_timestamp_or_device_creates_new_rows(api_client: TestClient) -> None:
    base = api_client.post(SENSOR_URL, json=_payload())
    later = api_client.post(SENSOR_URL, json=_payload(timestamp="2025-12-26T20:00:01Z"))
    other_device = api_client.post(SENSOR_URL, json=_payload(device_id="sensor-002"))

    assert {base.status_code, later.status_code, other_device.status_code} == {201}
    ids = {base.json()["id"], later.json()["id"], other_device.json()["id"]}
    assert len(ids) == 3


def test_battery_and_raw_are_optional(api_client: TestClient) -> None:
    body = _payload(raw={"soil_moisture": 41.2, "firmware": "1.4.0"})
    del body["battery"]

    response = api_client.post(SENSOR_URL, json=body)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["battery"] is None
    assert data["raw"] == {"soil_moisture": 41.2, "firmware": "1.4.0"}


def test_invalid_timestamp_is_rejected(api_client: TestClient) -> None:
    response = api_client.post(SENSOR_URL, json=_payload(timestamp="not-a-date"))

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "validation_failed"
    assert body["details"] == [
        {"field": "timestamp", "message": "timestamp must be a valid ISO8601 format"}
    ]


def test_missing_timestamp_is_rejected(api_client: TestClient) -> None:
    body = _payload()
    del body["timestamp"]

    response = api_client.post(SENSOR_URL, json=body)

    assert response.status_code == 400
    assert _fields(response) == {"timestamp"}


def test_negative_humidity_is_rejected(api_client: TestClient) -> None:
    response = api_client.post(SENSOR_URL, json=_payload(humidity=-1))

    assert response.status_code == 400
    assert _fields(response) == {"humidity"}


def test_numeric_strings_are_rejected(api_client: TestClient) -> None:
    response = api_client.post(SENSOR_URL, json=_payload(temperature="25.5", battery="85"))

    assert response.status_code == 400
    assert _fields(response) == {"temperature", "battery"}


def test_non_finite_measurements_are_rejected(api_client: TestClient) -> None:
    raw_body = (
        '{"device_id": "sensor-001", "timestamp": "2025-12-26T20:00:00Z",'
        ' "temperature": NaN, "humidity": 60, "battery": Infinity}'
    )

    response = api_client.post(
        SENSOR_URL, content=raw_body, headers={"Content-Type": "application/json"}
    )

    assert response.status_code == 400
    assert _fields(response) == {"temperature", "battery"}


def test_empty_device_id_is_rejected(api_client: TestClient) -> None:
    response = api_client.post(SENSOR_URL, json=_payload(device_id=""))

    assert response.status_code == 400
    assert _fields(response) == {"device_id"}


def test_rejected_payload_stores_nothing(api_client: TestClient) -> None:
    api_client.post(SENSOR_URL, json=_payload(humidity=-5))

    listing = api_client.get(SENSOR_URL)
    assert listing.json()["count"] == 0


def test_listing_filters_by_device_and_range(api_client: TestClient) -> None:
    for hour in (18, 19, 20, 21):
        api_client.post(SENSOR_URL, json=_payload(timestamp=f"2025-12-26T{hour}:00:00Z"))
    api_client.post(SENSOR_URL, json=_payload(device_id="sensor-002"))

    response = api_client.get(
        SENSOR_URL,
        params={
            "device_id": "sensor-001",
            "start_date": "2025-12-26T19:00:00Z",
            "end_date": "2025-12-26T20:00:00Z",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    stamps = [item["timestamp"] for item in body["data"]]
    assert stamps[0].startswith("2025-12-26T20:00:00")
    assert stamps[1].startswith("2025-12-26T19:00:00")


def test_listing_respects_limit(api_client: TestClient) -> None:
    for minute in range(5):
        api_client.post(SENSOR_URL, json=_payload(timestamp=f"2025-12-26T20:0{minute}:00Z"))

    response = api_client.get(SENSOR_URL, params={"limit": 2})

    assert response.json()["count"] == 2
    assert api_client.get(SENSOR_URL, params={"limit": 0}).status_code == 400


def test_unreachable_database_returns_service_unavailable(client_factory, tmp_path) -> None:
    missing = tmp_path / "missing-dir" / "greenhouse.db"
    client = client_factory(database_url=f"sqlite+aiosqlite:///{missing}", create_schema=False)

    with client:
        response = client.post(SENSOR_URL, json=_payload())

    assert response.status_code == 503
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "database_unavailable"


def test_unexpected_error_returns_generic_message(client_factory) -> None:
    client = client_factory(raise_server_exceptions=False)

    with client:
        async def explode(_data):
            raise RuntimeError("secret internals")

        client.app.state.sensor_service.submit = explode
        response = client.post(SENSOR_URL, json=_payload())

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "internal_error"
    assert "secret" not in body["message"]


def test_slow_request_returns_gateway_timeout(client_factory) -> None:
    client = client_factory(request_timeout=0.05, raise_server_exceptions=False)

    with client:
        service = client.app.state.sensor_service
        submit = service.submit

        async def stall(data):
            await asyncio.sleep(0.3)
            return await submit(data)

        service.submit = stall
        response = client.post(SENSOR_URL, json=_payload())

    assert response.status_code == 504
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "request_timeout"
