"""Courier API client and response normalisation."""
import json
from datetime import datetime

import httpx
import pytest

from campusmart.core.errors import CourierUnavailable
from campusmart.shipping.courier import CourierClient
from campusmart.shipping.normalize import (
    checkpoint_key,
    find_in_listing,
    map_courier_status,
    map_detailed_status,
    normalize_tracking,
    parse_checkpoint,
    parse_time,
)

CP_OLD = {"time": "2026-10-18T09:00:00+08:00", "content": "Item dispatched", "location": "Shah Alam"}
CP_NEW = {"time": "2026-10-19T07:30:00Z", "content": "Out for delivery", "location": "Kolej Mawar"}


class TestNormalize:
    def test_three_shapes_collapse(self):
        shape_a = {"tracking": {"tracking_number": "EP1", "latest_checkpoint": CP_NEW}}
        shape_b = {"tracking": {"tracking_number": "EP1", "checkpoints": [CP_OLD, CP_NEW]}}
        shape_c = {"data": {"tracking_number": "EP1", "checkpoints": [CP_NEW, CP_OLD]}}

        a, b, c = (normalize_tracking(s) for s in (shape_a, shape_b, shape_c))
        assert a.detailed_status == b.detailed_status == c.detailed_status == "Out for delivery"
        assert a.status == b.status == c.status == "shipped"
        assert b.checkpoints == c.checkpoints
        assert [cp.details for cp in b.checkpoints] == ["Out for delivery", "Item dispatched"]
        assert b.checkpoints[0].time == datetime(2026, 10, 19, 7, 30)
        assert b.checkpoints[1].time == datetime(2026, 10, 18, 1, 0)

    def test_latest_checkpoint_and_list_are_merged(self):
        tracking = normalize_tracking({"tracking": {"latest_checkpoint": CP_NEW, "checkpoints": [CP_OLD, CP_NEW]}})
        assert len(tracking.checkpoints) == 2

    def test_status_code_wins_over_text(self):
        tracking = normalize_tracking({"tracking": {"status": "delivered", "checkpoints": [CP_NEW]}})
        assert tracking.status == "delivered"
        assert tracking.detailed_status == "Out for delivery"

    def test_alternate_checkpoint_fields(self):
        tracking = normalize_tracking({"data": {"checkpoints": [
            {"checkpoint_time": "2026-10-19 10:00:00", "message": "Parcel delivered"},
        ]}})
        cp = tracking.checkpoints[0]
        assert cp.time == datetime(2026, 10, 19, 10, 0)
        assert cp.details == "Parcel delivered"
        assert tracking.status == "delivered"

    def test_courier_object(self):
        tracking = normalize_tracking({"tracking": {"courier": {"code": "poslaju", "name": "Pos Laju"}, "checkpoints": []}})
        assert (tracking.courier_code, tracking.courier_name) == ("poslaju", "Pos Laju")
        assert tracking.checkpoints == []
        assert tracking.detailed_status == "Processing"

    def test_find_in_listing_matches_any_number_key(self):
        listing = [
            {"number": "OTHER", "checkpoints": [CP_OLD]},
            {"trackingNumber": "EP1", "checkpoints": [CP_NEW]},
        ]
        assert find_in_listing(listing, "EP1").checkpoints[0].details == "Out for delivery"
        assert find_in_listing(listing, "MISSING") is None


class TestStatusTable:
    @pytest.mark.parametrize("text, status", [
        ("Info Received", "pending"),
        ("Available for Pickup", "pending"),
        ("Consignment Generated", "processing"),
        ("Label Printed", "processing"),
        ("In Transit to hub", "shipped"),
        ("Arrived at Delivery Office", "shipped"),
        ("OUT FOR DELIVERY", "shipped"),
        ("Attempt Failed", "shipped"),
        ("Delivered", "delivered"),
        ("Completed", "delivered"),
        ("Returned to sender", "cancelled"),
        ("Expired", "cancelled"),
        ("Something unexpected", "processing"),
        ("", "processing"),
    ])
    def test_detailed_text(self, text, status):
        assert map_detailed_status(text) == status

    @pytest.mark.parametrize("code, status", [
        ("info_received", "processing"),
        ("in_transit", "shipped"),
        ("failed_attempt", "shipped"),
        ("delivered", "delivered"),
        ("returned", "cancelled"),
    ])
    def test_courier_codes(self, code, status):
        assert map_courier_status(code) == status

    def test_unknown_code_falls_back_to_text(self):
        assert map_courier_status("weird", "Delivered to guard house") == "delivered"


class TestCheckpointKey:
    def test_deterministic_and_content_sensitive(self):
        when = datetime(2026, 10, 19, 7, 30)
        key = checkpoint_key(1, "EP1", when, "Delivered")
        assert key == checkpoint_key(1, "EP1", when, "Delivered")
        assert len(key) == 64
        assert key != checkpoint_key(2, "EP1", when, "Delivered")
        assert key != checkpoint_key(1, "EP1", when, "Delivered!")

    def test_untimed_checkpoint_keys_ignore_ingest_time(self):
        first = parse_checkpoint({"content": "Arrived at hub", "status": "in_transit"})
        assert first.untimed is True
        assert first.key_time is None
        key = checkpoint_key(1, "EP1", first.key_time, first.details, first.status)
        assert key == checkpoint_key(1, "EP1", None, "Arrived at hub", "in_transit")
        assert key != checkpoint_key(1, "EP1", None, "Arrived at hub", "delivered")

    def test_timed_checkpoint_keeps_its_time(self):
        cp = parse_checkpoint(CP_NEW)
        assert cp.untimed is False
        assert cp.key_time == datetime(2026, 10, 19, 7, 30)

    def test_parse_time_variants(self):
        assert parse_time("2026-10-19T07:30:00Z") == datetime(2026, 10, 19, 7, 30)
        assert parse_time("2026-10-19T15:30:00+08:00") == datetime(2026, 10, 19, 7, 30)
        assert parse_time("yesterday") is None
        assert parse_time(None) is None


def client_for(handler, **kwargs):
    return CourierClient(api_key="trk_test", base_url="https://tracking.test/api/v1",
                         transport=httpx.MockTransport(handler), **kwargs)


class TestCourierClient:
    def test_lookup_with_courier_sends_api_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"tracking": {"latest_checkpoint": CP_NEW}})

        data = client_for(handler).get_tracking("EP1", "poslaju")
        assert data["tracking"]["latest_checkpoint"] == CP_NEW
        assert seen[0].url.path == "/api/v1/trackings/poslaju/EP1"
        assert seen[0].headers["Tracking-Api-Key"] == "trk_test"

    def test_lookup_without_courier(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={})

        client_for(handler).get_tracking("EP1")
        assert seen == ["/api/v1/trackings/EP1"]

    def test_server_error_is_unavailable(self):
        with pytest.raises(CourierUnavailable):
            client_for(lambda r: httpx.Response(500, text="oops")).get_tracking("EP1")

    def test_network_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(CourierUnavailable):
            client_for(handler).list_trackings()

    def test_missing_api_key(self):
        with pytest.raises(CourierUnavailable):
            CourierClient(api_key="").get_tracking("EP1")

    @pytest.mark.parametrize("body", [{"data": [{"tracking_number": "EP1"}]}, {"trackings": [{"tracking_number": "EP1"}]}])
    def test_listing_shapes(self, body):
        assert client_for(lambda r: httpx.Response(200, json=body)).list_trackings() == [{"tracking_number": "EP1"}]

    def test_register_posts_number_and_courier(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(201, json={"tracking": {"tracking_number": "EP1"}})

        client_for(handler).register_tracking("EP1", "poslaju")
        assert seen == [{"tracking_number": "EP1", "courier": "poslaju"}]

    def test_register_already_exists_is_success(self):
        body = {"meta": {"code": 4001, "error_message": "Tracking already exists."}}
        assert client_for(lambda r: httpx.Response(400, json=body)).register_tracking("EP1", "poslaju") == body

    def test_register_other_error_raises(self):
        body = {"meta": {"error_message": "Invalid courier"}}
        with pytest.raises(CourierUnavailable):
            client_for(lambda r: httpx.Response(422, json=body)).register_tracking("EP1", "nope")
