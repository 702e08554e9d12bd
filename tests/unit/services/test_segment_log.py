import gzip
import json
import os

from services.embedding.EmbeddingSegmentLog import MANIFEST_NAME, EmbeddingSegmentLog


def collect(log: EmbeddingSegmentLog) -> dict[str, list[float]]:
    loaded: dict[str, list[float]] = {}
    log.load(lambda key, embedding: loaded.__setitem__(key, embedding))
    return loaded


def test_appended_records_are_reloaded_by_fresh_instance(helper_config, tmp_path):
    directory = str(tmp_path / "emb")
    writer = EmbeddingSegmentLog(helper_config, directory=directory)
    writer.append_batch([("a", [0.1, 0.2]), ("b", [0.3, 0.4])])

    reader = EmbeddingSegmentLog(helper_config, directory=directory)
    assert collect(reader) == {"a": [0.1, 0.2], "b": [0.3, 0.4]}


def test_tiny_threshold_rotates_and_compresses_segments(helper_config, tmp_path):
    directory = str(tmp_path / "emb")
    log = EmbeddingSegmentLog(helper_config, directory=directory, segment_size_mb=0.00001, compress=True)
    for key in ("a", "b", "c"):
        log.append_batch([(key, [1.0, 2.0])])

    segments = log.get_segments()
    assert len(segments) == 3
    assert segments[0].file.endswith(".ndjson.gz")
    assert segments[1].file.endswith(".ndjson.gz")
    assert segments[2].file.endswith(".ndjson")
    with gzip.open(os.path.join(directory, segments[0].file), "rt", encoding="utf-8") as f:
        assert json.loads(f.readline())["key"] == "a"

    assert set(collect(EmbeddingSegmentLog(helper_config, directory=directory))) == {"a", "b", "c"}


def test_one_batch_never_spans_two_segments(helper_config, tmp_path):
    directory = str(tmp_path / "emb")
    log = EmbeddingSegmentLog(helper_config, directory=directory, segment_size_mb=0.00001, compress=False)
    log.append_batch([("a", [1.0]), ("b", [2.0]), ("c", [3.0])])

    segments = log.get_segments()
    assert len(segments) == 1
    with open(os.path.join(directory, segments[0].file), "r", encoding="utf-8") as f:
        assert [json.loads(line)["key"] for line in f] == ["a", "b", "c"]


def test_restart_appends_to_last_segment(helper_config, tmp_path):
    directory = str(tmp_path / "emb")
    EmbeddingSegmentLog(helper_config, directory=directory).append_batch([("a", [1.0])])
    resumed = EmbeddingSegmentLog(helper_config, directory=directory)
    resumed.append_batch([("b", [2.0])])

    assert len(resumed.get_segments()) == 1
    assert set(collect(resumed)) == {"a", "b"}


def test_loader_tolerates_damaged_state(helper_config, tmp_path):
    directory = tmp_path / "emb"
    log = EmbeddingSegmentLog(helper_config, directory=str(directory), compress=False)
    log.append_batch([("good", [1.0])])
    segment = directory / log.get_segments()[0].file

    # half-written trailing line from a crashed writer
    with open(segment, "a", encoding="utf-8") as f:
        f.write('{"key": "torn", "embe')

    # manifest entry whose file never made it to disk, with stray whitespace
    manifest_path = directory / MANIFEST_NAME
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    manifest["segments"].insert(0, {"file": "segment-missing.ndjson\r", "size": 10, "createdAt": 1})
    manifest["segments"].append({"file": "../outside.ndjson", "size": 1, "createdAt": 2})
    manifest_path.write_text(json.dumps(manifest), encoding="utf-8")

    # segment on disk that the manifest does not list
    (directory / "segment-1-9999.ndjson").write_text(
        json.dumps({"key": "orphan", "embedding": [2.0]}) + "\nnot json\n", encoding="utf-8"
    )

    assert collect(EmbeddingSegmentLog(helper_config, directory=str(directory))) == {"good": [1.0], "orphan": [2.0]}


def test_writer_terminates_torn_line_before_appending(helper_config, tmp_path):
    directory = tmp_path / "emb"
    EmbeddingSegmentLog(helper_config, directory=str(directory)).append_batch([("a", [1.0])])
    first = EmbeddingSegmentLog(helper_config, directory=str(directory)).get_segments()[0].file
    with open(directory / first, "a", encoding="utf-8") as f:
        f.write('{"key": "torn"')

    resumed = EmbeddingSegmentLog(helper_config, directory=str(directory))
    resumed.append_batch([("b", [2.0])])

    assert collect(resumed) == {"a": [1.0], "b": [2.0]}


def test_load_of_missing_directory_is_empty(helper_config, tmp_path):
    assert collect(EmbeddingSegmentLog(helper_config, directory=str(tmp_path / "absent"))) == {}
