from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from .config import FACE_CROP_SIZE
from .exceptions import DetectorError, RecognizerError
from .logger import setup_logger
from .tracking import BoundingBox

UNKNOWN_LABEL = "unknown"


@dataclass(frozen=True)
class Prediction:
    student_id: str
    distance: float


class Detector(Protocol):
    def detect(self, frame: np.ndarray) -> List[BoundingBox]:
        ...


class Recognizer(Protocol):
    def recognize(self, face_crop: np.ndarray) -> Optional[Prediction]:
        ...


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def laplacian_variance(frame: np.ndarray) -> float:
    """Sharpness score; blurry frames have a low Laplacian variance."""
    return float(cv2.Laplacian(to_gray(frame), cv2.CV_64F).var())


def is_likely_face(box: BoundingBox, frame_width: int, frame_height: int, min_face: int) -> bool:
    if box.width <= 0 or box.height <= 0:
        return False
    min_side = max(96, int(round(min_face * 0.7)))
    if box.width < min_side or box.height < min_side:
        return False
    aspect = box.height / float(box.width)
    if aspect < 0.65 or aspect > 1.55:
        return False
    if box.width > frame_width * 0.95 or box.height > frame_height * 0.95:
        return False
    return True


def crop_face(
    frame: np.ndarray,
    box: BoundingBox,
    size: Tuple[int, int] = FACE_CROP_SIZE,
) -> Optional[np.ndarray]:
    h, w = frame.shape[:2]
    clamped = box.clamp(w, h)
    if clamped is None:
        return None
    roi = frame[clamped.y : clamped.y + clamped.height, clamped.x : clamped.x + clamped.width]
    if roi.size == 0:
        return None
    return cv2.resize(to_gray(roi), size, interpolation=cv2.INTER_AREA)


def load_label_map(labels_path: Path) -> Dict[int, str]:
    """Read ``<int label>,<student id>`` lines written alongside an LBPH model."""
    labels: Dict[int, str] = {}
    for line in labels_path.read_text(encoding="utf-8").splitlines():
        parts = line.split(",", 1)
        if len(parts) != 2:
            continue
        try:
            key = int(parts[0].strip())
        except ValueError:
            continue
        value = parts[1].strip()
        if value:
            labels[key] = value
    return labels


class HaarFaceDetector:
    def __init__(
        self,
        cascade_path: Path,
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_size: int = 96,
    ):
        cascade_path = Path(cascade_path)
        if not cascade_path.exists():
            raise DetectorError(f"Haar cascade not found: {cascade_path}")
        self.classifier = cv2.CascadeClassifier(str(cascade_path))
        if self.classifier.empty():
            raise DetectorError(f"Failed to load Haar cascade: {cascade_path}")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size

    def detect(self, frame: np.ndarray) -> List[BoundingBox]:
        gray = cv2.equalizeHist(to_gray(frame))
        try:
            found = self.classifier.detectMultiScale(
                gray,
                scaleFactor=self.scale_factor,
                minNeighbors=self.min_neighbors,
                minSize=(self.min_size, self.min_size),
            )
        except cv2.error as exc:
            raise DetectorError(f"Face detection failed: {exc}") from exc
        return [BoundingBox(int(x), int(y), int(bw), int(bh)) for (x, y, bw, bh) in found]


class LBPHRecognizer:
    """OpenCV LBPH recognizer loaded from ``lbph.yml`` and ``labels.txt``.

    Distances are the raw LBPH confidences (lower is better). Crops are
    contrast-equalized with CLAHE before prediction.
    """

    def __init__(self, model_path: Path, labels_path: Optional[Path] = None):
        face_module = getattr(cv2, "face", None)
        if face_module is None:
            raise RecognizerError("cv2.face is unavailable. Install opencv-contrib-python.")

        model_path = Path(model_path)
        if model_path.is_dir():
            model_path = model_path / "lbph.yml"
        labels_path = Path(labels_path) if labels_path else model_path.parent / "labels.txt"
        if not model_path.exists():
            raise RecognizerError(f"LBPH model not found: {model_path}")
        if not labels_path.exists():
            raise RecognizerError(f"LBPH labels not found: {labels_path}")

        self.logger = setup_logger(self.__class__.__name__)
        try:
            self.model = face_module.LBPHFaceRecognizer_create()
            self.model.read(str(model_path))
            self.labels = load_label_map(labels_path)
            self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        except (cv2.error, OSError) as exc:
            raise RecognizerError(f"Failed to load LBPH model: {exc}") from exc
        self.logger.info("LBPH model loaded from %s with %d labels", model_path, len(self.labels))

    @property
    def label_ids(self) -> Sequence[str]:
        return list(self.labels.values())

    def recognize(self, face_crop: np.ndarray) -> Optional[Prediction]:
        if face_crop is None or face_crop.size == 0:
            return None
        processed = self.clahe.apply(to_gray(face_crop))
        try:
            label, confidence = self.model.predict(processed)
        except cv2.error as exc:
            raise RecognizerError(f"LBPH prediction failed: {exc}") from exc
        student_id = self.labels.get(int(label), UNKNOWN_LABEL)
        return Prediction(student_id=student_id, distance=max(0.0, float(confidence)))
