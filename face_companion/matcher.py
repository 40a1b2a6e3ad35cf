import json
import math
from typing import Any, Iterable, Optional

import numpy as np

from .config import MATCH_DISTANCE_THRESHOLD
from .logger import setup_logger
from .models import KnownPerson, MatchResult

logger = setup_logger("EmbeddingMatcher")

UNKNOWN = MatchResult(is_known=False)


def serialize_embedding(embedding: np.ndarray) -> str:
    vector = np.asarray(embedding, dtype=np.float32)
    if vector.ndim != 1 or vector.size == 0:
        raise ValueError("Embedding must be a non-empty 1D vector.")
    return json.dumps([float(v) for v in vector])


def parse_embedding(raw: Any) -> Optional[np.ndarray]:
    """Return a finite 1D float32 vector, or None when raw cannot be read as one."""
    if raw is None:
        return None
    try:
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        vector = np.asarray(raw, dtype=np.float32)
    except (TypeError, ValueError):
        return None

    if vector.ndim != 1 or vector.size == 0 or not np.all(np.isfinite(vector)):
        return None
    return vector


def distance_to_confidence(distance: float) -> int:
    # Half-up rounding, clamped to a percentage.
    score = math.floor((1.0 - distance) * 100.0 + 0.5)
    return int(min(100, max(0, score)))


def match(
    probe: Any,
    registry: Iterable[KnownPerson],
    threshold: float = MATCH_DISTANCE_THRESHOLD,
) -> MatchResult:
    """Find the registry entry closest to ``probe`` by Euclidean distance.

    Entries without an embedding are never candidates. A stored embedding that
    cannot be parsed, or whose length differs from the probe, is skipped and
    logged. Only entries strictly under ``threshold`` qualify; on equal
    distances the entry seen first wins.
    """
    query = parse_embedding(probe)
    if query is None:
        logger.warning("Probe embedding could not be parsed; treating face as unknown")
        return UNKNOWN

    best: Optional[KnownPerson] = None
    best_distance = math.inf

    for person in registry:
        if person.face_encoding is None:
            continue

        stored = parse_embedding(person.face_encoding)
        if stored is None:
            logger.warning("Skipping %s (%s): stored embedding is malformed", person.name, person.id)
            continue
        if stored.shape != query.shape:
            logger.warning(
                "Skipping %s (%s): embedding length %d does not match probe length %d",
                person.name,
                person.id,
                stored.size,
                query.size,
            )
            continue

        distance = float(np.linalg.norm(query - stored))
        logger.debug("Distance to %s: %.4f (threshold %.2f)", person.name, distance, threshold)
        if distance < threshold and distance < best_distance:
            best = person
            best_distance = distance

    if best is None:
        return UNKNOWN

    return MatchResult(
        is_known=True,
        person_id=best.id,
        name=best.name,
        confidence=distance_to_confidence(best_distance),
        distance=best_distance,
    )
