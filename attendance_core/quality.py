from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .types import FaceRegion, QualityVerdict


@dataclass(frozen=True)
class QualityLimits:
    min_keypoints: int = 6
    min_keypoint_spread: float = 0.35
    min_face_size: int = 20
    edge_margin: int = 5
    min_aspect_ratio: float = 0.75
    max_aspect_ratio: float = 1.3
    min_area_ratio: float = 0.005
    max_area_ratio: float = 0.8


class GeometricQualityValidator:
    """Rejects partial, tiny, oddly shaped or keypoint-poor faces.

    Keypoint checks only run when the detector reports keypoints; Haar-style
    detectors that return bare boxes are judged on geometry alone.
    """

    def __init__(self, limits: QualityLimits | None = None) -> None:
        self.limits = limits or QualityLimits()

    def is_acceptable(self, region: FaceRegion, frame_width: int, frame_height: int) -> QualityVerdict:
        lim = self.limits
        width, height = region.width, region.height
        if width <= 0 or height <= 0:
            return QualityVerdict(False, "No bounding box detected", 0.0)

        if region.keypoints:
            verdict = self._check_keypoints(region)
            if verdict is not None:
                return verdict

        if width < lim.min_face_size or height < lim.min_face_size:
            return QualityVerdict(
                False,
                f"Face too small: {width}x{height} (min: {lim.min_face_size}x{lim.min_face_size})",
                min(width, height) / lim.min_face_size,
            )

        x1, y1, x2, y2 = region.bbox
        if (
            x1 < lim.edge_margin
            or y1 < lim.edge_margin
            or x2 > frame_width - lim.edge_margin
            or y2 > frame_height - lim.edge_margin
        ):
            return QualityVerdict(False, "Face too close to frame edge (partial face)", 0.3)

        aspect = width / height
        if not lim.min_aspect_ratio <= aspect <= lim.max_aspect_ratio:
            return QualityVerdict(
                False,
                f"Unusual face aspect ratio: {aspect:.2f} "
                f"(expected {lim.min_aspect_ratio}-{lim.max_aspect_ratio})",
                0.4,
            )

        frame_area = max(1, frame_width * frame_height)
        area_ratio = region.area / frame_area
        if area_ratio < lim.min_area_ratio or area_ratio > lim.max_area_ratio:
            score = area_ratio / lim.min_area_ratio if area_ratio < lim.min_area_ratio else lim.max_area_ratio / area_ratio
            return QualityVerdict(False, f"Face size ratio unusual: {area_ratio * 100:.1f}% of frame", score)

        size_score = min(1.0, min(width, height) / 120.0)
        keypoint_score = min(1.0, len(region.keypoints) / 12.0) if region.keypoints else 1.0
        return QualityVerdict(True, "", (size_score + keypoint_score) / 2.0)

    def _check_keypoints(self, region: FaceRegion) -> QualityVerdict | None:
        lim = self.limits
        count = len(region.keypoints)
        if count < lim.min_keypoints:
            return QualityVerdict(
                False,
                f"Insufficient keypoints: {count} (min: {lim.min_keypoints})",
                count / lim.min_keypoints,
            )

        points = np.asarray(region.keypoints, dtype=np.float64)
        xs, ys = points[:, 0], points[:, 1]
        spread = ((xs.max() - xs.min()) / region.width + (ys.max() - ys.min()) / region.height) / 2.0
        if spread < lim.min_keypoint_spread:
            return QualityVerdict(False, f"Keypoints too clustered ({spread * 100:.0f}%)", float(spread))

        center_y = float(ys.mean())
        band = region.height * 0.1
        top = int(np.sum(ys < center_y - band))
        middle = int(np.sum(np.abs(ys - center_y) <= region.height * 0.4))
        bottom = int(np.sum(ys > center_y + band))
        regions_hit = sum(1 for n in (top, middle, bottom) if n > 0)
        if regions_hit < 2 and middle < int(count * 0.4):
            return QualityVerdict(
                False,
                f"Poor face feature distribution (top:{top}, mid:{middle}, bot:{bottom})",
                0.3,
            )
        return None
