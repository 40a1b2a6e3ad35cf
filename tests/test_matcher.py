import json

import numpy as np
import pytest

from face_companion.config import LOG_DIR
from face_companion.matcher import distance_to_confidence, match, parse_embedding, serialize_embedding
from face_companion.models import KnownPerson


def person(person_id: str, name: str, vector=None, raw=None) -> KnownPerson:
    encoding = raw if raw is not None else (json.dumps(vector) if vector is not None else None)
    return KnownPerson(id=person_id, name=name, face_encoding=encoding)


def test_empty_registry_is_unknown():
    result = match(np.array([0.1, 0.2, 0.3]), [])
    assert result.is_known is False
    assert result.person_id is None


def test_entries_without_embedding_never_match():
    registry = [person("a", "Alice"), person("b", "Bob")]
    assert match(np.array([0.0, 0.0, 0.0]), registry).is_known is False


def test_exact_probe_matches_with_full_confidence():
    registry = [person("a", "Alice", [0.6, 0.8, 0.0])]
    result = match(np.array([0.6, 0.8, 0.0]), registry)
    assert result.is_known is True
    assert result.name == "Alice"
    assert result.person_id == "a"
    assert result.confidence == 100
    assert result.distance == pytest.approx(0.0)


def test_far_probe_is_unknown():
    registry = [person("a", "Alice", [1.0, 0.0, 0.0])]
    result = match(np.array([1.0, 1.2, 0.0]), registry)
    assert result.is_known is False


def test_closest_candidate_wins():
    registry = [
        person("a", "Alice", [1.0, 0.0, 0.0]),
        person("b", "Bob", [0.9, 0.1, 0.0]),
        person("c", "Cara", [0.0, 1.0, 0.0]),
    ]
    result = match(np.array([0.88, 0.1, 0.0]), registry)
    assert result.name == "Bob"


def test_tie_keeps_first_seen_entry():
    registry = [
        person("a", "Alice", [0.1, 0.0]),
        person("b", "Bob", [-0.1, 0.0]),
    ]
    result = match(np.array([0.0, 0.0]), registry)
    assert result.person_id == "a"


def test_candidate_must_be_strictly_under_threshold():
    registry = [person("a", "Alice", [0.5, 0.0])]
    assert match(np.array([0.0, 0.0]), registry, threshold=0.5).is_known is False
    assert match(np.array([0.0, 0.0]), registry, threshold=0.51).is_known is True


def test_malformed_entries_are_skipped():
    registry = [
        person("x", "Broken", raw="not json"),
        person("y", "Short", [0.5, 0.5]),
        person("z", "NaN", raw="[NaN, 0.0, 0.0]"),
        person("a", "Alice", [0.2, 0.2, 0.2]),
    ]
    result = match(np.array([0.2, 0.2, 0.25]), registry)
    assert result.is_known is True
    assert result.name == "Alice"


def test_unparseable_probe_is_unknown():
    registry = [person("a", "Alice", [0.2, 0.2, 0.2])]
    assert match("garbage", registry).is_known is False
    assert match(None, registry).is_known is False


def test_confidence_from_distance():
    assert distance_to_confidence(0.0) == 100
    assert distance_to_confidence(0.2) == 80
    assert distance_to_confidence(0.42) == 58
    assert distance_to_confidence(1.7) == 0


def test_serialize_rejects_empty_vector():
    with pytest.raises(ValueError):
        serialize_embedding(np.array([], dtype=np.float32))


def test_parse_accepts_stored_json_and_lists():
    stored = serialize_embedding(np.array([0.25, -0.5], dtype=np.float32))
    assert parse_embedding(stored).tolist() == [0.25, -0.5]
    assert parse_embedding([1, 2, 3]).tolist() == [1.0, 2.0, 3.0]
    assert parse_embedding("[[1, 2], [3, 4]]") is None


def test_skipped_entries_are_written_to_the_log_file():
    match(np.array([0.2, 0.2, 0.25]), [person("x", "Broken", raw="not json")])
    log_text = (LOG_DIR / "companion.log").read_text(encoding="utf-8")
    assert "EmbeddingMatcher" in log_text
    assert "Skipping Broken (x): stored embedding is malformed" in log_text
