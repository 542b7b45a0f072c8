from __future__ import annotations

import cv2
import numpy as np

from .exceptions import StrategyUnavailable
from .types import FaceRegion

try:
    from insightface.app import FaceAnalysis
except ImportError:  # pragma: no cover - optional accelerated backend, checked in initialize().
    FaceAnalysis = None


def _largest_first(regions: list[FaceRegion]) -> list[FaceRegion]:
    return sorted(regions, key=lambda r: r.area, reverse=True)


class InsightFaceEngine:
    """ArcFace detection and embedding in one pass (optimized path)."""

    def __init__(
        self,
        model_name: str = "buffalo_l",
        det_size: tuple[int, int] = (640, 640),
        prefer_gpu: bool = True,
    ) -> None:
        self.model_name = model_name
        self.engine_id = f"insightface-{model_name}"
        self.det_size = det_size
        self.prefer_gpu = prefer_gpu
        self.providers: list[str] = []
        self.app = None

    def initialize(self) -> None:
        if self.app is not None:
            return
        if FaceAnalysis is None:
            raise StrategyUnavailable("insightface is not installed. Install the 'optimized' extra.")

        import onnxruntime as ort

        available = set(ort.get_available_providers())
        providers = ["CPUExecutionProvider"]
        if self.prefer_gpu and "CUDAExecutionProvider" in available:
            providers.insert(0, "CUDAExecutionProvider")
        try:
            app = FaceAnalysis(name=self.model_name, providers=providers)
            app.prepare(ctx_id=0 if len(providers) > 1 else -1, det_size=self.det_size)
        except Exception as exc:
            raise StrategyUnavailable(f"Failed to load insightface model '{self.model_name}': {exc}") from exc
        self.providers = providers
        self.app = app

    def detect(self, frame: np.ndarray) -> list[FaceRegion]:
        if self.app is None:
            raise StrategyUnavailable("InsightFaceEngine used before initialize().")

        regions: list[FaceRegion] = []
        for face in self.app.get(frame):
            x1, y1, x2, y2 = [int(v) for v in face.bbox.tolist()[:4]]
            landmarks = getattr(face, "landmark_2d_106", None)
            keypoints = tuple((float(x), float(y)) for x, y in landmarks) if landmarks is not None else ()
            regions.append(
                FaceRegion(
                    bbox=(x1, y1, x2, y2),
                    score=float(getattr(face, "det_score", 1.0)),
                    keypoints=keypoints,
                    embedding=np.asarray(face.embedding, dtype=np.float32),
                )
            )
        return _largest_first(regions)

    def embed(self, region: FaceRegion) -> np.ndarray:
        if region.embedding is None:
            return np.empty(0, dtype=np.float32)
        return region.embedding


class HaarCascadeEngine:
    """OpenCV Haar-cascade detection with a grayscale-crop embedding (guaranteed path)."""

    EMBEDDING_SHAPE = (32, 16)
    ENGINE_ID = "opencv-haar-gray32x16"

    def __init__(self, min_face_size: int = 60, scale_factor: float = 1.1, min_neighbors: int = 6) -> None:
        self.min_face_size = min_face_size
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.engine_id = self.ENGINE_ID
        self._cascade = None

    def initialize(self) -> None:
        if self._cascade is not None:
            return
        cascade_path = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        cascade = cv2.CascadeClassifier(cascade_path)
        if cascade.empty():
            raise StrategyUnavailable(f"Failed to load OpenCV Haar cascade from {cascade_path}.")
        self._cascade = cascade

    def detect(self, frame: np.ndarray) -> list[FaceRegion]:
        if self._cascade is None:
            raise StrategyUnavailable("HaarCascadeEngine used before initialize().")

        gray = frame if frame.ndim == 2 else cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        boxes = self._cascade.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(self.min_face_size, self.min_face_size),
        )

        height, width = gray.shape[:2]
        regions: list[FaceRegion] = []
        for (x, y, w, h) in boxes:
            x1, y1 = int(max(0, x)), int(max(0, y))
            x2, y2 = int(min(width, x + w)), int(min(height, y + h))
            if x2 <= x1 or y2 <= y1:
                continue
            regions.append(FaceRegion(bbox=(x1, y1, x2, y2), score=1.0, crop=gray[y1:y2, x1:x2].copy()))
        return _largest_first(regions)

    def embed(self, region: FaceRegion) -> np.ndarray:
        crop = region.crop
        if crop is None or crop.size == 0:
            return np.empty(0, dtype=np.float32)

        gray = crop if crop.ndim == 2 else cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY)
        resized = cv2.resize(gray, self.EMBEDDING_SHAPE, interpolation=cv2.INTER_AREA)
        embedding = resized.reshape(-1).astype(np.float32) / 255.0
        embedding -= float(np.mean(embedding))
        norm = np.linalg.norm(embedding)
        if norm <= 1e-8:
            # Flat crop carries no identity signal.
            return np.empty(0, dtype=np.float32)
        return embedding / norm
