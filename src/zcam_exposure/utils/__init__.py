"""Utility modules for zcam-exposure.

Exports:
    ImageEncoder: Protocol for JPEG encoding
    CV2ImageEncoder: OpenCV-based implementation (imports cv2 when created)
    SnapshotWriter: Rolling per-camera JPEG snapshot

Example:
    from zcam_exposure.utils import SnapshotWriter
    writer = SnapshotWriter(Path("snapshots"), "cam-left")
"""

from zcam_exposure.utils.image import CV2ImageEncoder, ImageEncoder, SnapshotWriter

__all__ = ["CV2ImageEncoder", "ImageEncoder", "SnapshotWriter"]
