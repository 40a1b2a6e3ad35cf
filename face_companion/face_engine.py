import time
from pathlib import Path
from typing import List, Sequence

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import (
    DEVICE,
    EMBEDDER_WEIGHT_SOURCES,
    FACE_DETECTION_THRESHOLD,
    MIN_FACE_SIZE,
    MODEL_LOAD_ATTEMPTS,
    MODEL_LOAD_RETRY_DELAY_SECONDS,
)
from .exceptions import FaceEngineError, ModelLoadError
from .logger import setup_logger
from .models import FaceBatch

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None

DEFAULT_WEIGHTS = "default"


def _build_embedder(weights_source: str) -> torch.nn.Module:
    if weights_source == DEFAULT_WEIGHTS:
        backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
    else:
        path = Path(weights_source)
        if not path.is_file():
            raise FaceEngineError(f"Embedder weights not found at {path}")
        backbone = models.resnet18(weights=None)
        state = torch.load(path, map_location="cpu")
        backbone.load_state_dict(state, strict=False)
    backbone.fc = torch.nn.Identity()
    return backbone


class FaceEngine:
    def __init__(
        self,
        device: str = DEVICE,
        detection_threshold: float = FACE_DETECTION_THRESHOLD,
        min_face_size: int = MIN_FACE_SIZE,
        weights_source: str = DEFAULT_WEIGHTS,
    ):
        if mp is None:
            raise FaceEngineError("mediapipe is required. Install the project dependencies.")

        self.device = torch.device(device)
        self.detection_threshold = detection_threshold
        self.min_face_size = min_face_size
        self.weights_source = weights_source

        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True

        try:
            self.detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=detection_threshold,
            )
            self.embedder = _build_embedder(weights_source).eval().to(self.device)
            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
        except FaceEngineError:
            raise
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize face models from {weights_source}: {exc}") from exc

    def extract_embeddings(self, frame: np.ndarray) -> FaceBatch:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            result = self.detector.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face extraction failed: {exc}") from exc

        if not result.detections:
            return FaceBatch(embeddings=[], boxes=[], confidences=[])

        h, w = frame.shape[:2]
        crops = []
        boxes = []
        confs = []

        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.detection_threshold:
                continue

            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))

            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                continue

            crop = rgb[y1:y2, x1:x2]
            if crop.size == 0:
                continue

            crops.append(crop)
            boxes.append(np.array([x1, y1, x2, y2], dtype=np.float32))
            confs.append(score)

        if not crops:
            return FaceBatch(embeddings=[], boxes=[], confidences=[])

        try:
            tensor_batch = self._to_tensor_batch(crops)
            with torch.inference_mode():
                raw = self.embedder(tensor_batch)
                normed = f.normalize(raw, p=2, dim=1)
                emb = normed.detach().cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise FaceEngineError(f"Embedding generation failed: {exc}") from exc

        # Largest face first; the encounter machine only evaluates the first one.
        order = sorted(range(len(boxes)), key=lambda i: -float((boxes[i][2] - boxes[i][0]) * (boxes[i][3] - boxes[i][1])))
        return FaceBatch(
            embeddings=[emb[i] for i in order],
            boxes=[boxes[i] for i in order],
            confidences=[confs[i] for i in order],
        )

    def close(self) -> None:
        self.detector.close()

    def _to_tensor_batch(self, face_crops: List[np.ndarray]) -> torch.Tensor:
        processed = []
        for crop in face_crops:
            resized = cv2.resize(crop, (224, 224), interpolation=cv2.INTER_AREA)
            tensor = torch.from_numpy(resized).permute(2, 0, 1).float() / 255.0
            processed.append(tensor)

        batch = torch.stack(processed, dim=0).to(self.device)
        return (batch - self.mean) / self.std


def load_face_engine(
    sources: Sequence[str] = EMBEDDER_WEIGHT_SOURCES,
    attempts: int = MODEL_LOAD_ATTEMPTS,
    retry_delay: float = MODEL_LOAD_RETRY_DELAY_SECONDS,
    device: str = DEVICE,
    factory=FaceEngine,
    sleep=time.sleep,
) -> FaceEngine:
    """Try every weight source in order, for up to ``attempts`` rounds.

    Raises ModelLoadError listing each failure once all rounds are exhausted,
    so detection never starts half-initialized.
    """
    logger = setup_logger("FaceEngineLoader")
    if not sources:
        raise ModelLoadError("No embedder weight sources configured.")

    failures: list[str] = []
    for attempt in range(1, max(1, attempts) + 1):
        for source in sources:
            logger.info("Loading face models from %s (attempt %d/%d)", source, attempt, attempts)
            try:
                engine = factory(device=device, weights_source=source)
            except FaceEngineError as exc:
                failures.append(f"{source}: {exc}")
                logger.warning("Face model source %s failed: %s", source, exc)
                continue
            logger.info("Face models ready from %s", source)
            return engine
        if attempt < attempts:
            sleep(retry_delay)

    raise ModelLoadError(
        "Face recognition models could not be loaded from any source. Tried: " + " | ".join(failures)
    )
