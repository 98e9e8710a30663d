import threading
import time

import pytest

from tagcache.models import DEFAULT_RECORD, Record
from tagcache.sync import COALESCED, ChangeKind

from conftest import JPEG_BYTES, build_flac


class MemorySource:
    def __init__(self, data):
        self.data = data

    def read(self):
        return self.data

    def write(self, snapshot):
        self.data = snapshot


def _song(title, artist="Band", **extra):
    comments = {"TITLE": title, "ARTIST": artist, "ALBUM": "Record"}
    comments.update(extra)
    return build_flac(comments)


@pytest.fixture
def library(fake_fs):
    fake_fs.add("/lib/a.flac", _song("A"))
    fake_fs.add("/lib/sub/b.flac", build_flac({"TITLE": "B", "ARTIST": "Band"}, pictures=[(JPEG_BYTES, "image/jpeg")]))
    fake_fs.add("/lib/notes.txt", "not audio")
    return fake_fs


# ---------------------------------------------------------------------------
# refresh_all
# ---------------------------------------------------------------------------

def test_refresh_extracts_every_audio_file(engine, library):
    summary = engine.refresh_all(["/lib"])
    assert summary["scanned"] == 2
    assert summary["extracted"] == 2
    assert engine.store.get("/lib/a.flac").title == "A"
    assert engine.store.get("/lib/sub/b.flac").cover in engine.covers
    assert engine.store.get("/lib/notes.txt") is None


def test_second_refresh_reads_nothing(engine, library):
    engine.refresh_all(["/lib"])
    before = dict(library.reads)
    summary = engine.refresh_all(["/lib"])
    assert summary["reused"] == 2
    assert summary["extracted"] == 0
    assert dict(library.reads) == before


def test_refresh_reuses_complete_snapshot_entries(engine, library):
    engine.reconciler.source = MemorySource({
        "/lib/a.flac": {"title": "Cached", "artist": "Band", "album": "", "cover": "cover:stale", "lyrics": None},
        "/lib/sub/b.flac": {"title": "", "artist": "Band", "album": "x", "cover": None, "lyrics": None},
    })
    summary = engine.refresh_all(["/lib"])

    assert summary["reused"] == 1
    assert summary["extracted"] == 1
    assert library.reads["/lib/a.flac"] == 0
    cached = engine.store.get("/lib/a.flac")
    assert cached.title == "Cached"
    assert cached.cover is None
    assert engine.store.get("/lib/sub/b.flac").title == "B"


def test_refresh_re_extracts_incomplete_records(engine, library):
    engine.store.put("/lib/a.flac", Record(title="A", artist="  ", album="Record"))
    engine.store.put("/lib/sub/b.flac", Record(title="B", artist="Band", album=""))
    summary = engine.refresh_all(["/lib"])
    assert summary["extracted"] == 1
    assert summary["reused"] == 1
    assert engine.store.get("/lib/a.flac").artist == "Band"


def test_force_re_extracts_everything(engine, library):
    engine.refresh_all(["/lib"])
    summary = engine.refresh_all(["/lib"], force=True)
    assert summary["extracted"] == 2
    assert library.reads["/lib/a.flac"] == 2


def test_per_file_failures_store_placeholders(engine, library):
    library.add("/lib/garbage.mp3", b"\x00" * 64)
    library.add("/lib/locked.flac", PermissionError("denied"))
    summary = engine.refresh_all(["/lib"])

    assert summary["scanned"] == 4
    assert summary["failed"] == 2
    assert summary["extracted"] == 2
    assert engine.store.get("/lib/garbage.mp3") == DEFAULT_RECORD
    assert engine.store.get("/lib/locked.flac") == DEFAULT_RECORD


def test_refresh_without_roots(engine, library):
    summary = engine.refresh_all(["", "  "])
    assert summary["scanned"] == 0
    assert engine.store.size() == 0
    assert not engine.needs_save()


def test_refresh_requests_one_debounced_save(engine, library, wait):
    engine.refresh_all(["/lib"])
    assert engine.needs_save()
    assert engine.saves.event.wait(2.0)
    assert not engine.needs_save()
    time.sleep(0.4)
    assert engine.saves.calls == 1


# ---------------------------------------------------------------------------
# change events
# ---------------------------------------------------------------------------

def test_delete_is_applied_and_flushed_immediately(engine, library):
    engine.refresh_all(["/lib"])
    cover = engine.store.get("/lib/sub/b.flac").cover

    engine.handle_change_event("/lib/sub/b.flac", ChangeKind.DELETE)

    assert engine.store.get("/lib/sub/b.flac") is None
    assert cover not in engine.covers
    assert engine.saves.calls == 1
    assert not engine.needs_save()


def test_delete_of_unknown_path_still_flushes(engine):
    engine.handle_change_event("/lib/never-seen.mp3", "delete")
    assert engine.saves.calls == 1


def test_create_is_extracted_after_settling(engine, library, wait):
    library.add("/lib/new.flac", _song("New"))
    engine.handle_change_event("/lib/new.flac", "create")
    assert wait(lambda: engine.store.get("/lib/new.flac") is not None)
    assert engine.store.get("/lib/new.flac").title == "New"
    assert engine.needs_save()
    assert engine.saves.event.wait(2.0)
    assert not engine.needs_save()


def test_modify_picks_up_new_tags(engine, library, wait):
    engine.refresh_all(["/lib"])
    library.add("/lib/a.flac", _song("A (remastered)"))
    engine.handle_change_event("/lib/a.flac", "modify")
    assert wait(lambda: engine.store.get("/lib/a.flac").title == "A (remastered)")


def test_burst_of_events_coalesces_into_one_save(engine, library, wait):
    library.add("/lib/c.flac", _song("C"))
    for _ in range(5):
        engine.handle_change_event("/lib/a.flac", "modify")
        engine.handle_change_event("/lib/c.flac", "create")
    assert wait(lambda: engine.store.size() == 2)
    assert engine.saves.event.wait(2.0)
    time.sleep(0.5)
    assert engine.saves.calls == 1


def test_delete_cancels_pending_settle(engine, library):
    library.add("/lib/tmp.flac", _song("Tmp"))
    engine.settle_delay = 0.2
    engine.handle_change_event("/lib/tmp.flac", "create")
    engine.handle_change_event("/lib/tmp.flac", "delete")
    time.sleep(0.4)
    assert engine.store.get("/lib/tmp.flac") is None
    assert library.reads["/lib/tmp.flac"] == 0


def test_event_for_vanished_file_stores_nothing(engine, library):
    engine.handle_change_event("/lib/ghost.flac", "create")
    time.sleep(0.3)
    assert engine.store.get("/lib/ghost.flac") is None
    assert engine.saves.calls == 0


def test_sidecar_change_re_extracts_matching_audio(engine, library, wait):
    library.add("/lib/a.flac", _song("A", LYRICS="embedded words"))
    engine.refresh_all(["/lib"])
    assert engine.store.get("/lib/a.flac").lyrics == "embedded words"

    library.add("/lib/a.lrc", "[00:01.00]sidecar words")
    engine.handle_change_event("/lib/a.lrc", "create")
    assert wait(lambda: engine.store.get("/lib/a.flac").lyrics == "[00:01.00]sidecar words")

    library.remove("/lib/a.lrc")
    engine.handle_change_event("/lib/a.lrc", "delete")
    assert wait(lambda: engine.store.get("/lib/a.flac").lyrics == "embedded words")
    assert engine.store.get("/lib/sub/b.flac").lyrics is None


def test_non_audio_events_are_ignored(engine, library):
    engine.handle_change_event("/lib/notes.txt", "modify")
    engine.handle_change_event("/lib/notes.txt", "delete")
    time.sleep(0.1)
    assert engine.store.size() == 0
    assert engine.saves.calls == 0


def test_unknown_event_kind_is_rejected(engine):
    with pytest.raises(ValueError):
        engine.handle_change_event("/lib/a.flac", "rename")


def test_events_after_close_are_dropped(engine, library):
    engine.close()
    engine.handle_change_event("/lib/a.flac", "create")
    time.sleep(0.1)
    assert engine.store.size() == 0


# ---------------------------------------------------------------------------
# in-flight guard, covers
# ---------------------------------------------------------------------------

def test_concurrent_request_reruns_instead_of_overlapping(engine):
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow():
        calls.append(1)
        if len(calls) == 1:
            started.set()
            release.wait(2.0)
        return "extracted"

    result = {}
    t = threading.Thread(target=lambda: result.setdefault("first", engine._run_exclusive("/lib/x.flac", slow)))
    t.start()
    assert started.wait(2.0)
    assert engine._run_exclusive("/lib/x.flac", slow) == COALESCED
    release.set()
    t.join(2.0)

    assert result["first"] == "extracted"
    assert len(calls) == 2


def test_load_cover_restores_dropped_handle(engine, library):
    engine.store.put("/lib/sub/b.flac", Record(title="B", artist="Band", album="Record"))
    handle = engine.load_cover("/lib/sub/b.flac")
    assert handle in engine.covers
    assert engine.covers.get(handle).data == JPEG_BYTES
    assert engine.store.get("/lib/sub/b.flac").cover == handle
    assert engine.load_cover("/lib/sub/b.flac") == handle
    assert library.reads["/lib/sub/b.flac"] == 1


def test_load_cover_for_uncached_or_coverless_file(engine, library):
    assert engine.load_cover("/lib/unknown.flac") is None
    engine.store.put("/lib/a.flac", Record(title="A", artist="Band", album="Record"))
    assert engine.load_cover("/lib/a.flac") is None
    assert len(engine.covers) == 0


def test_replacing_a_record_releases_its_old_cover(engine, library):
    engine.refresh_all(["/lib"])
    old = engine.store.get("/lib/sub/b.flac").cover
    engine.refresh_all(["/lib"], force=True)
    new = engine.store.get("/lib/sub/b.flac").cover
    assert new != old
    assert old not in engine.covers
    assert len(engine.covers) == 1


# ---------------------------------------------------------------------------
# deletes racing a refresh
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("file_still_listed", [False, True])
def test_delete_during_refresh_is_not_undone_by_snapshot(engine, library, file_still_listed):
    complete = {"artist": "Band", "album": "Record", "cover": None, "lyrics": None}
    engine.reconciler.source = MemorySource({
        "/lib/a.flac": dict(complete, title="A"),
        "/lib/sub/b.flac": dict(complete, title="B"),
    })
    listing = library.iter_audio_files

    def list_then_delete(roots, suffixes):
        files = listing(roots, suffixes)
        if not file_still_listed:
            library.remove("/lib/sub/b.flac")
        engine.handle_change_event("/lib/sub/b.flac", "delete")
        return files

    library.iter_audio_files = list_then_delete
    summary = engine.refresh_all(["/lib"])

    assert summary["reused"] == 1
    assert summary["skipped"] == 1
    assert engine.store.get("/lib/sub/b.flac") is None
    assert list(engine.reconciler.export_snapshot()) == ["/lib/a.flac"]


def test_delete_during_extraction_wins(engine, library):
    decode = engine.extractor.extract

    def decode_then_delete(data, external_lyrics=None, *, filename=None):
        record = decode(data, external_lyrics, filename=filename)
        if filename == "/lib/sub/b.flac":
            engine.handle_change_event(filename, "delete")
        return record

    engine.extractor.extract = decode_then_delete
    summary = engine.refresh_all(["/lib"])

    assert summary["extracted"] == 1
    assert summary["skipped"] == 1
    assert engine.store.get("/lib/sub/b.flac") is None
    assert len(engine.covers) == 0


def test_create_after_delete_is_stored(engine, library, wait):
    engine.refresh_all(["/lib"])
    engine.handle_change_event("/lib/a.flac", "delete")
    assert engine.store.get("/lib/a.flac") is None
    engine.handle_change_event("/lib/a.flac", "create")
    assert wait(lambda: engine.store.get("/lib/a.flac") is not None)
