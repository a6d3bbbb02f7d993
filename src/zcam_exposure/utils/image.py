"""JPEG snapshots of analysed frames.

``ImageEncoder`` abstracts OpenCV's JPEG encoding so tests can inject a
fake encoder. ``SnapshotWriter`` keeps one rolling snapshot per camera,
overwritten each cycle, so the latest analysed frame can be inspected
next to the log line that describes it.

Usage:
    writer = SnapshotWriter(Path("/data/surf/snapshots"), "cam-left")
    path = writer.write(frame)

The cv2 import is deferred to ``CV2ImageEncoder.__init__`` so importing
this module never loads OpenCV.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from zcam_exposure.drivers.transport import Frame

__all__ = ["CV2ImageEncoder", "ImageEncoder", "SnapshotWriter"]

#: Snapshot quality. Frames are archived for review, not streamed.
SNAPSHOT_QUALITY = 100


@runtime_checkable
class ImageEncoder(Protocol):
    """Protocol for JPEG encoding of RGB frames."""

    def encode_jpeg(self, rgb: NDArray[Any], quality: int = SNAPSHOT_QUALITY) -> bytes:
        """Encode an (H, W, 3) RGB array as JPEG bytes.

        Args:
            rgb: uint8 image in RGB order.
            quality: JPEG quality 1-100.

        Returns:
            JPEG bytes starting with 0xFFD8.

        Raises:
            ValueError: If quality is out of range or encoding fails.
        """
        ...  # pragma: no cover


class CV2ImageEncoder(ImageEncoder):
    """OpenCV-based JPEG encoder.

    Thread Safety:
        cv2.imencode is safe to call from several camera workers at once.
    """

    def __init__(self) -> None:
        """Import cv2 on first instantiation.

        Raises:
            ImportError: If opencv-python-headless is not installed.
        """
        import cv2

        self._cv2 = cv2

    def encode_jpeg(self, rgb: NDArray[Any], quality: int = SNAPSHOT_QUALITY) -> bytes:
        """Encode an RGB frame with cv2.imencode.

        OpenCV expects BGR, so channels are swapped before encoding.

        Raises:
            ValueError: If quality is not in 1-100 or encoding fails.

        Example:
            >>> encoder = CV2ImageEncoder()
            >>> jpeg = encoder.encode_jpeg(np.zeros((90, 160, 3), dtype=np.uint8))
            >>> jpeg[:2]
            b'\\xff\\xd8'
        """
        if not 1 <= quality <= 100:
            raise ValueError(f"JPEG quality must be 1-100, got {quality}")

        bgr = self._cv2.cvtColor(rgb, self._cv2.COLOR_RGB2BGR)
        success, buffer = self._cv2.imencode(
            ".jpg", bgr, [self._cv2.IMWRITE_JPEG_QUALITY, quality]
        )
        if not success:
            raise ValueError("Failed to encode frame as JPEG")
        return bytes(buffer.tobytes())


class SnapshotWriter:
    """Writes the latest analysed frame of one camera to a JPEG file.

    The file is replaced atomically, so a reader never sees a partial
    image.
    """

    def __init__(
        self,
        directory: Path,
        camera: str,
        encoder: ImageEncoder | None = None,
        quality: int = SNAPSHOT_QUALITY,
    ) -> None:
        """Create a writer.

        Args:
            directory: Directory for snapshots, created on first write.
            camera: Camera identifier, used as the file name.
            encoder: JPEG encoder. Defaults to ``CV2ImageEncoder``.
            quality: JPEG quality 1-100.
        """
        self.path = Path(directory) / f"{camera}.jpg"
        self.quality = quality
        self._encoder = encoder if encoder is not None else CV2ImageEncoder()

    def write(self, frame: Frame) -> Path:
        """Encode and store ``frame``, returning the snapshot path.

        Raises:
            ValueError: If encoding fails.
            OSError: If the file cannot be written.
        """
        data = self._encoder.encode_jpeg(frame.pixels, self.quality)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".jpg.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, self.path)
        return self.path
