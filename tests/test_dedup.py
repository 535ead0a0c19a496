from relay.dedup import DedupMarkers
from relay.storage import StorageDirectory


def test_first_seen_only_once_per_chat(tmp_path, clock):
    markers = DedupMarkers(StorageDirectory(tmp_path), clock=clock)

    assert markers.first_seen("acc", "42") is True
    assert markers.first_seen("acc", "42") is False
    assert markers.first_seen("acc", "43") is True
    assert markers.first_seen("other", "42") is True


def test_markers_are_shared_between_instances(tmp_path, clock):
    first = DedupMarkers(StorageDirectory(tmp_path), clock=clock)
    second = DedupMarkers(StorageDirectory(tmp_path), clock=clock)

    assert first.first_seen("acc", "42") is True
    assert second.first_seen("acc", "42") is False


def test_markers_reset_on_next_day(tmp_path, clock):
    markers = DedupMarkers(StorageDirectory(tmp_path), clock=clock)
    markers.first_seen("acc", "42")

    clock.advance(days=1)

    assert markers.first_seen("acc", "42") is True


def test_disabled_markers_always_allow(tmp_path, clock):
    markers = DedupMarkers(StorageDirectory(tmp_path), enabled=False, clock=clock)

    assert markers.first_seen("acc", "42") is True
    assert markers.first_seen("acc", "42") is True
    assert not (tmp_path / ".dedup").exists()


def test_unsafe_chat_ids_stay_inside_marker_directory(tmp_path, clock):
    markers = DedupMarkers(StorageDirectory(tmp_path), clock=clock)

    assert markers.first_seen("acc", "../../escape") is True
    assert not (tmp_path.parent / "escape").exists()
    assert len(list((tmp_path / ".dedup").rglob("acc__*"))) == 1


def test_prune_keeps_retention_window(tmp_path, clock):
    markers = DedupMarkers(StorageDirectory(tmp_path), retention_days=2, clock=clock)
    markers.first_seen("acc", "1")
    clock.advance(days=1)
    markers.first_seen("acc", "2")
    clock.advance(days=1)
    markers.first_seen("acc", "3")

    removed = markers.prune()

    assert removed == ["20260301"]
    assert sorted(p.name for p in (tmp_path / ".dedup").iterdir()) == ["20260302", "20260303"]
