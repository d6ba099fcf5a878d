import pytest
from pydantic import ValidationError

import MSG
from MSG import MetricKind, TelemetrySample, extract_payload, message_id


def test_extract_payload_prefers_payload_then_data():
    assert extract_payload({"payload": {"moisture": 44}, "data": {"x": 1}}) == {"moisture": 44}
    assert extract_payload({"data": {"lux": 900}}) == {"lux": 900}
    assert extract_payload({"level": 3}) == {"level": 3}


def test_extract_payload_treats_null_as_absent():
    assert extract_payload({"payload": None, "data": {"lux": 1}}) == {"lux": 1}
    evt = {"payload": None, "data": None, "id": "a"}
    assert extract_payload(evt) is evt


def test_extract_payload_non_mapping_passthrough():
    assert extract_payload(42) == 42
    assert extract_payload("raw") == "raw"
    assert extract_payload(None) is None


def test_extract_payload_idempotent_on_unwrapped():
    once = extract_payload({"payload": {"moisture": 44}})
    assert extract_payload(once) == once == {"moisture": 44}


def test_message_id_falls_back_to_idem():
    assert message_id({"id": "abc"}) == "abc"
    assert message_id({"idem": 7}) == "7"
    assert message_id({"payload": {}}) is None
    assert message_id("nope") is None


def test_sample_payload_rounding():
    ts = 1700000000000
    assert TelemetrySample(kind=MetricKind.SOIL_MOISTURE, value=44.6, timestamp=ts).to_payload() == {
        "moisture": 45, "timestamp": ts}
    assert TelemetrySample(kind=MetricKind.TEMPERATURE, value=23.456, timestamp=ts).to_payload() == {
        "celsius": 23.5, "timestamp": ts}
    assert TelemetrySample(kind=MetricKind.LIGHT, value=9000.0, timestamp=ts).to_payload() == {
        "lux": 9000, "timestamp": ts}


def test_topic_for():
    assert MSG.topic_for("workspace", MetricKind.WATER_LEVEL) == "workspace/plant/water"
    assert MSG.topic_for("progo", MetricKind.TEMPERATURE) == "progo/plant/temperature"


def test_client_event_validation():
    evt = MSG.validate_client_event({"event": "plan_selected", "data": {"plan": "pro", "price": 9}})
    assert evt.event == "plan_selected"
    assert MSG.PlanSelected.model_validate(evt.data).plan == "pro"

    with pytest.raises(ValidationError):
        MSG.validate_client_event({"data": {}})


def test_plan_purchased_accepts_camel_case_user_id():
    plan = MSG.PlanPurchased.model_validate({"plan": "basic", "userId": "u-1"})
    assert plan.user_id == "u-1"
