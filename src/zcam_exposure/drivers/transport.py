"""RTSP transport: one decoded RGB frame on demand.

The camera's live preview is H.264 over RTSP, and its stream metadata
cannot be trusted: substream codec parameters are often empty or wrong.
The transport therefore:

- always interleaves RTP over TCP, never UDP
- keeps container probing short and ignores the advertised streams
- sniffs the first packets for an Annex-B NAL start code to find the
  video substream, falling back to the busiest substream
- decodes with a fresh ``h264`` decoder created by name, so width, height
  and pixel format come from the first decoded frame
- converts that frame to RGB24 with a cached bilinear reformatter

Every blocking step is bounded: the open and each read carry a timeout and
an acquire reads at most 200 packets.

Example:
    with RtspTransport.for_camera("192.168.150.201") as transport:
        frame = transport.acquire_frame()
        print(frame.width, frame.height)
"""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import av
import numpy as np
from av.video.reformatter import VideoReformatter
from numpy.typing import NDArray

from zcam_exposure.errors import (
    DecodeError,
    FrameStarved,
    NoVideoStream,
    StreamLost,
    TransportOpenFailed,
)
from zcam_exposure.observability import get_logger

__all__ = [
    "BilinearRgbConverter",
    "Frame",
    "RtspTransport",
    "TransportOptions",
    "rtsp_url",
]

logger = get_logger(__name__)

#: Fixed RTSP path of the camera's live preview.
LIVE_STREAM_PATH = "/live_stream"

_NAL_START_CODES = (b"\x00\x00\x00\x01", b"\x00\x00\x01")


def rtsp_url(ip: str) -> str:
    """Return the live preview URL for a camera address."""
    return f"rtsp://{ip}{LIVE_STREAM_PATH}"


@dataclass(frozen=True, slots=True)
class Frame:
    """A decoded frame in packed RGB24.

    Attributes:
        pixels: (height, width, 3) uint8 array in RGB order.
        width: Frame width in pixels.
        height: Frame height in pixels.
    """

    pixels: NDArray[np.uint8]
    width: int
    height: int

    def tobytes(self) -> bytes:
        """Return the packed ``3 * width * height`` byte buffer."""
        return np.ascontiguousarray(self.pixels).tobytes()


@dataclass(frozen=True, slots=True)
class TransportOptions:
    """Connection and discovery parameters.

    Attributes:
        open_timeout: Seconds allowed for the RTSP handshake.
        read_timeout: Seconds allowed for each packet read.
        max_delay_us: Maximum demuxer reorder delay in microseconds.
        buffer_size: Socket receive buffer in bytes.
        probesize: Bytes the container may probe before returning.
        analyzeduration_us: Microseconds the container may analyse.
        sniff_packets: Packets read while discovering the video substream.
        nal_min_size: Smallest packet tested for a NAL start code.
        fallback_min_bytes: Bytes the busiest substream needs to be used
            as a fallback.
        max_packets: Packets read per acquire before giving up.
    """

    open_timeout: float = 10.0
    read_timeout: float = 10.0
    max_delay_us: int = 3_000_000
    buffer_size: int = 1 << 20
    probesize: int = 32_768
    analyzeduration_us: int = 500_000
    sniff_packets: int = 30
    nal_min_size: int = 1000
    fallback_min_bytes: int = 50 * 1024
    max_packets: int = 200

    def av_options(self) -> dict[str, str]:
        """Demuxer options for the RTSP input."""
        return {
            "rtsp_transport": "tcp",
            "timeout": str(int(self.open_timeout * 1_000_000)),
            "max_delay": str(self.max_delay_us),
            "buffer_size": str(self.buffer_size),
            "probesize": str(self.probesize),
            "analyzeduration": str(self.analyzeduration_us),
        }


@runtime_checkable
class Container(Protocol):  # pragma: no cover
    """The part of an input container the transport uses."""

    def demux(self, *args: Any, **kwargs: Any) -> Iterator[Any]:
        """Yield packets from every substream."""
        ...

    def close(self) -> None:
        """Release the container."""
        ...


@runtime_checkable
class Decoder(Protocol):  # pragma: no cover
    """The part of a codec context the transport uses."""

    def decode(self, packet: Any = None) -> list[Any]:
        """Decode one packet, returning zero or more frames."""
        ...


Opener = Callable[[str, dict[str, str], tuple[float, float]], Container]


def open_container(
    url: str, options: dict[str, str], timeout: tuple[float, float]
) -> Container:
    """Open an RTSP input with PyAV."""
    return av.open(url, mode="r", options=options, timeout=timeout)


def create_h264_decoder() -> Decoder:
    """Create an H.264 decoder by name, independent of container parameters."""
    return av.CodecContext.create("h264", "r")


class BilinearRgbConverter:
    """Converts decoded frames to RGB24 with one cached bilinear reformatter."""

    def __init__(self) -> None:
        self._reformatter: VideoReformatter | None = None

    def __call__(self, frame: Any) -> NDArray[np.uint8]:
        if self._reformatter is None:
            self._reformatter = VideoReformatter()
        rgb = self._reformatter.reformat(frame, format="rgb24", interpolation="BILINEAR")
        return rgb.to_ndarray()


class RtspTransport:
    """Owns the RTSP container, decoder and reformatter of one camera.

    Not thread-safe; each controller owns exactly one transport. ``close``
    is idempotent and the transport can be reopened after it.
    """

    def __init__(
        self,
        url: str,
        options: TransportOptions | None = None,
        *,
        opener: Opener | None = None,
        decoder_factory: Callable[[], Decoder] | None = None,
        converter: Callable[[Any], NDArray[np.uint8]] | None = None,
    ) -> None:
        """Create a closed transport.

        Args:
            url: RTSP URL, normally ``rtsp://<ip>/live_stream``.
            options: Connection and discovery parameters.
            opener: Opens the container. Defaults to PyAV.
            decoder_factory: Creates the decoder. Defaults to PyAV's h264.
            converter: Converts a decoded frame to an RGB array. Defaults
                to ``BilinearRgbConverter``.
        """
        self.url = url
        self.options = options or TransportOptions()
        self._opener = opener or open_container
        self._decoder_factory = decoder_factory or create_h264_decoder
        self._converter = converter or BilinearRgbConverter()
        self._container: Container | None = None
        self._packets: Iterator[Any] | None = None
        self._decoder: Decoder | None = None
        self._backlog: deque[Any] = deque()
        self._video_index: int | None = None

    @classmethod
    def for_camera(cls, ip: str, options: TransportOptions | None = None) -> RtspTransport:
        """Create a transport for the camera's live preview."""
        return cls(rtsp_url(ip), options)

    @property
    def is_open(self) -> bool:
        return self._container is not None

    @property
    def video_stream_index(self) -> int | None:
        """Substream chosen by discovery, None while closed."""
        return self._video_index

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Connect, discover the video substream and create the decoder.

        No-op when already open.

        Raises:
            TransportOpenFailed: If the RTSP handshake fails.
            NoVideoStream: If discovery finds no usable substream.
            StreamLost: If reading fails during discovery.
        """
        if self.is_open:
            return

        timeouts = (self.options.open_timeout, self.options.read_timeout)
        try:
            container = self._opener(self.url, self.options.av_options(), timeouts)
        except (av.error.FFmpegError, OSError) as e:
            raise TransportOpenFailed(f"RTSP open failed: {e}", url=self.url) from e

        self._container = container
        try:
            self._packets = iter(container.demux())
            self._discover()
            self._decoder = self._decoder_factory()
        except Exception:
            self.close()
            raise

        logger.debug("Stream opened", url=self.url, video_stream=self._video_index)

    def close(self) -> None:
        """Release container, decoder and queued packets."""
        container = self._container
        self._container = None
        self._packets = None
        self._decoder = None
        self._backlog.clear()
        self._video_index = None
        if container is not None:
            try:
                container.close()
            except (av.error.FFmpegError, OSError) as e:
                logger.debug("Error closing stream", url=self.url, error=str(e))

    def __enter__(self) -> RtspTransport:
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Packets
    # ------------------------------------------------------------------

    def _next_packet(self) -> Any | None:
        """Read one packet; None at end of stream."""
        if self._packets is None:
            raise StreamLost("transport is not open", url=self.url)
        try:
            return next(self._packets)
        except StopIteration:
            return None
        except (av.error.FFmpegError, OSError) as e:
            raise StreamLost(f"packet read failed: {e}", url=self.url) from e

    def _discover(self) -> None:
        """Pick the video substream by sniffing for NAL start codes.

        Packets read during discovery that belong to the chosen substream
        are kept for the first acquire, so parameter sets seen here reach
        the decoder.
        """
        opts = self.options
        sniffed: list[Any] = []
        bytes_per_stream: Counter[int] = Counter()
        video_index: int | None = None

        for _ in range(opts.sniff_packets):
            packet = self._next_packet()
            if packet is None:
                break
            if not packet.size:
                continue
            sniffed.append(packet)
            bytes_per_stream[packet.stream_index] += packet.size
            if packet.size >= opts.nal_min_size and bytes(packet)[:4].startswith(
                _NAL_START_CODES
            ):
                video_index = packet.stream_index
                break

        if video_index is None and bytes_per_stream:
            busiest, total = bytes_per_stream.most_common(1)[0]
            if total > opts.fallback_min_bytes:
                video_index = busiest
                logger.debug(
                    "No NAL start code found, using busiest substream",
                    url=self.url,
                    stream=busiest,
                    bytes=total,
                )

        if video_index is None:
            raise NoVideoStream(
                f"no video substream in {len(sniffed)} packets", url=self.url
            )

        self._video_index = video_index
        self._backlog = deque(p for p in sniffed if p.stream_index == video_index)

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def acquire_frame(self) -> Frame:
        """Decode the next frame and return it as RGB24.

        Reads at most ``max_packets`` packets, counting packets queued from
        discovery.

        Raises:
            StreamLost: If the transport is closed, a read fails or the
                stream ends before a frame is decoded.
            DecodeError: If the stream ends after the decoder failed, or a
                decoded frame cannot be converted.
            FrameStarved: If the packet cap is reached without a frame.
        """
        if not self.is_open or self._decoder is None:
            raise StreamLost("transport is not open", url=self.url)

        decode_error: Exception | None = None
        for _ in range(self.options.max_packets):
            packet = self._backlog.popleft() if self._backlog else self._next_packet()
            if packet is None:
                if decode_error is not None:
                    raise DecodeError(
                        f"decoder failed before end of stream: {decode_error}",
                        url=self.url,
                    ) from decode_error
                raise StreamLost("stream ended before a frame was decoded", url=self.url)

            if packet.stream_index != self._video_index or not packet.size:
                continue

            try:
                frames = self._decoder.decode(packet)
            except (av.error.FFmpegError, ValueError) as e:
                decode_error = e
                continue

            if frames:
                return self._convert(frames[0])

        raise FrameStarved(
            f"no frame decoded in {self.options.max_packets} packets", url=self.url
        )

    def _convert(self, decoded: Any) -> Frame:
        try:
            pixels = self._converter(decoded)
        except (av.error.FFmpegError, ValueError) as e:
            raise DecodeError(f"frame conversion failed: {e}", url=self.url) from e
        return Frame(pixels=pixels, width=pixels.shape[1], height=pixels.shape[0])
