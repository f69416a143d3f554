import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from marker_renderer import MAX_ANIMATION_S, MarkerAnimation, render_markers  # noqa: E402
from transit_models import BUS, TRAIN, Snapshot, VehiclePosition  # noqa: E402

BASE = datetime(2026, 6, 14, 18, 0, tzinfo=timezone.utc)


def _snap(*vehicles, seconds=0):
    return Snapshot(vehicles=tuple(vehicles), captured_at=BASE + timedelta(seconds=seconds))


def _bus(vid, lat, lon, route="10"):
    return VehiclePosition(vid, BUS, lat, lon, route)


def test_first_snapshot_inserts_without_animation():
    frame = render_markers({}, _snap(_bus("B1", 33.7, -84.4)))

    assert list(frame.markers) == ["bus:B1"]
    assert frame.added == ["bus:B1"]
    assert frame.animations == {}
    assert frame.removed == []


def test_moved_marker_is_animated_from_old_to_new():
    first = render_markers({}, _snap(_bus("B1", 33.7, -84.4)))
    second = render_markers(first.markers, _snap(_bus("B1", 33.8, -84.3), seconds=5), now=1000.0, duration_s=1.0)

    anim = second.animations["bus:B1"]
    assert (anim.from_lat, anim.from_lon) == (33.7, -84.4)
    assert (anim.to_lat, anim.to_lon) == (33.8, -84.3)
    assert anim.started_at == 1000.0
    assert second.added == []
    assert second.markers["bus:B1"].latitude == 33.8


def test_unchanged_position_has_no_animation():
    first = render_markers({}, _snap(_bus("B1", 33.7, -84.4)))
    second = render_markers(first.markers, _snap(_bus("B1", 33.7, -84.4), seconds=5))

    assert second.animations == {}
    assert list(second.markers) == ["bus:B1"]


def test_animation_duration_is_capped():
    first = render_markers({}, _snap(_bus("B1", 33.7, -84.4)))
    second = render_markers(first.markers, _snap(_bus("B1", 33.8, -84.4), seconds=5), duration_s=10)

    assert second.animations["bus:B1"].duration_s == MAX_ANIMATION_S


def test_missing_vehicle_is_removed():
    first = render_markers({}, _snap(_bus("B1", 33.7, -84.4), _bus("B2", 33.6, -84.5)))
    second = render_markers(first.markers, _snap(_bus("B2", 33.6, -84.5), seconds=5))

    assert list(second.markers) == ["bus:B2"]
    assert second.removed == ["bus:B1"]


def test_reappearing_vehicle_is_inserted_fresh():
    first = render_markers({}, _snap(_bus("B1", 33.7, -84.4)))
    gone = render_markers(first.markers, _snap(seconds=5))
    back = render_markers(gone.markers, _snap(_bus("B1", 33.9, -84.2), seconds=10))

    assert back.added == ["bus:B1"]
    assert back.animations == {}


def test_grace_period_keeps_missing_marker_as_stale():
    first = render_markers({}, _snap(_bus("B1", 33.7, -84.4)))
    second = render_markers(first.markers, _snap(seconds=5), grace_s=20)
    third = render_markers(second.markers, _snap(seconds=25), grace_s=20)

    assert second.markers["bus:B1"].stale is True
    assert second.removed == []
    assert third.removed == ["bus:B1"]
    assert third.markers == {}


def test_same_id_in_both_feeds_gets_two_markers():
    frame = render_markers(
        {}, _snap(_bus("100", 33.7, -84.4), VehiclePosition("100", TRAIN, 33.75, -84.39, "RED"))
    )

    assert sorted(frame.markers) == ["bus:100", "train:100"]


def test_position_at_interpolates_and_clamps():
    anim = MarkerAnimation("bus:B1", 0.0, 0.0, 10.0, 20.0, started_at=100.0, duration_s=2.0)

    assert anim.position_at(99.0) == (0.0, 0.0)
    assert anim.position_at(101.0) == pytest.approx((5.0, 10.0))
    assert anim.position_at(105.0) == (10.0, 20.0)


def test_frame_to_dict_is_json_ready():
    first = render_markers({}, _snap(_bus("B1", 33.7, -84.4)))
    payload = render_markers(first.markers, _snap(_bus("B1", 33.8, -84.4), seconds=5), now=5.0).to_dict()

    assert payload["markers"][0]["vehicle_id"] == "B1"
    assert payload["animations"][0]["from"] == [33.7, -84.4]
    assert payload["animations"][0]["to"] == [33.8, -84.4]
