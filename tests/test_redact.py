from __future__ import annotations

from tripcoord._redact import redact_for_log
from tripcoord.models.route import GeoPoint, Rider


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "tripId": "trip_bus_1",
        "Authorization": "Bearer abc",
        "token": {"riderId": "rider_a"},
        "password": "pw",
        "nested": {"cookie": "session=1"},
    }

    redacted = redact_for_log(payload)
    assert redacted["tripId"] == "trip_bus_1"
    assert redacted["Authorization"] == "<redacted>"
    assert redacted["password"] == "<redacted>"
    assert redacted["token"] == "<redacted>"
    assert redacted["nested"]["cookie"] == "<redacted>"


def test_redact_for_log_coarsens_coordinates() -> None:
    payload = {"position": {"lat": 52.370216, "lng": 4.895168}, "stops": [{"latitude": 1.23456}]}

    redacted = redact_for_log(payload)
    assert redacted["position"] == {"lat": 52.37, "lng": 4.895}
    assert redacted["stops"][0]["latitude"] == 1.235


def test_redact_for_log_masks_names_and_dumps_models() -> None:
    rider = Rider(rider_id="rider_a", carrier_id="bus_1", stop_id="stop_1", display_name="Ada Lovelace")

    redacted = redact_for_log({"rider": rider, "fix": GeoPoint(lat=1.23456, lng=2.0)})
    assert redacted["rider"]["displayName"] == "A***"
    assert redacted["rider"]["riderId"] == "rider_a"
    assert redacted["fix"] == {"lat": 1.235, "lng": 2.0}


def test_redact_for_log_truncates_long_strings_and_hides_unknown_objects() -> None:
    redacted = redact_for_log({"value": "x" * 600, "blob": b"\x00\x01", "obj": object()}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]
    assert redacted["blob"] == "<bytes>"
    assert redacted["obj"] == "<object>"
