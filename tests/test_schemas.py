"""Tests for event schema validation."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.collector.schemas import (
    CanonicalEvent,
    EventName,
    LinkDeviceRequest,
    TrackEventRequest,
)


def _canonical(**overrides) -> CanonicalEvent:
    fields = {
        "id": "evt_1",
        "tenant_id": "t1",
        "event_name": "page_view",
        "user_id": "user_1",
        "timestamp": datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        "platform": "web",
    }
    fields.update(overrides)
    return CanonicalEvent(**fields)


class TestTrackEventRequest:
    def test_valid_minimal_with_user(self):
        req = TrackEventRequest(event_name="page_view", user_id="user_1")
        assert req.user_id == "user_1"
        assert req.device_id is None
        assert req.timestamp is None
        assert req.properties == {}

    def test_valid_minimal_with_device_only(self):
        req = TrackEventRequest(event_name="app_opened", device_id="dev_1")
        assert req.device_id == "dev_1"

    def test_camel_case_payload(self):
        req = TrackEventRequest.model_validate(
            {"eventName": "purchase", "userId": "u1", "sessionId": "s1", "properties": {"amount": 9.5}}
        )
        assert req.event_name == "purchase"
        assert req.session_id == "s1"
        assert req.properties["amount"] == 9.5

    def test_missing_both_identities_rejected(self):
        with pytest.raises(ValidationError, match="at least one of user_id or device_id"):
            TrackEventRequest(event_name="page_view")

    def test_blank_identities_count_as_missing(self):
        with pytest.raises(ValidationError, match="at least one of user_id or device_id"):
            TrackEventRequest(event_name="page_view", user_id="   ", device_id="")

    def test_empty_event_name_rejected(self):
        with pytest.raises(ValidationError, match="event_name must not be empty"):
            TrackEventRequest(event_name="  ", user_id="u1")

    def test_malformed_event_name_rejected(self):
        with pytest.raises(ValidationError, match="not well formed"):
            TrackEventRequest(event_name="drop table; --", user_id="u1")

    def test_custom_event_name_accepted(self):
        req = TrackEventRequest(event_name="Checkout:Coupon-Applied", user_id="u1")
        assert req.event_name == "Checkout:Coupon-Applied"

    def test_properties_must_be_an_object(self):
        with pytest.raises(ValidationError):
            TrackEventRequest.model_validate({"eventName": "click", "userId": "u1", "properties": [1, 2]})

    def test_naive_timestamp_is_utc(self):
        req = TrackEventRequest(event_name="click", user_id="u1", timestamp=datetime(2024, 5, 1, 8, 30))
        assert req.timestamp.tzinfo == timezone.utc

    def test_offset_timestamp_converted_to_utc(self):
        req = TrackEventRequest.model_validate(
            {"eventName": "click", "userId": "u1", "timestamp": "2024-05-01T10:30:00+02:00"}
        )
        assert req.timestamp == datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)

    def test_invalid_timestamp_rejected(self):
        with pytest.raises(ValidationError):
            TrackEventRequest.model_validate({"eventName": "click", "userId": "u1", "timestamp": "yesterday"})

    def test_project_key_not_dumped(self):
        req = TrackEventRequest.model_validate({"eventName": "click", "userId": "u1", "projectKey": "app_k"})
        assert req.project_key == "app_k"
        assert "project_key" not in req.model_dump()


class TestLinkDeviceRequest:
    def test_to_track_request(self):
        req = LinkDeviceRequest(user_id="u1", device_id="d1")
        track = req.to_track_request()
        assert track.event_name == EventName.DEVICE_LINKED.value
        assert (track.user_id, track.device_id) == ("u1", "d1")

    def test_requires_both_ids(self):
        with pytest.raises(ValidationError):
            LinkDeviceRequest(user_id="u1")
        with pytest.raises(ValidationError):
            LinkDeviceRequest(user_id=" ", device_id="d1")


class TestCanonicalEvent:
    def test_frozen(self):
        event = _canonical()
        with pytest.raises(ValidationError):
            event.user_id = "someone_else"

    def test_requires_an_identity(self):
        with pytest.raises(ValidationError):
            _canonical(user_id=None, device_id=None)

    def test_wire_format_is_camel_case(self):
        wire = _canonical(device_id="d1", properties={"plan": "pro"}).to_wire()
        assert wire["tenantId"] == "t1"
        assert wire["eventName"] == "page_view"
        assert wire["deviceId"] == "d1"
        assert wire["properties"] == {"plan": "pro"}
        assert wire["timestamp"].startswith("2024-01-01T12:00:00")

    def test_is_device_link(self):
        assert _canonical(event_name="device_linked", device_id="d1").is_device_link
        assert not _canonical(event_name="device_linked").is_device_link
        assert not _canonical(event_name="page_view", device_id="d1").is_device_link

    def test_timestamp_normalized_to_utc(self):
        local = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert _canonical(timestamp=local).timestamp == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
