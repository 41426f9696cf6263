"""
HLS playlist parsing.

Turns M3U8 master and media playlists into immutable segment lists. Only
the subset of tags needed for the platform's audio streams is understood:
unknown tags are ignored, tags that would change the meaning of the media
(encryption, fMP4 init sections) are rejected.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urljoin

from sounds_proxy.exceptions import MalformedManifest, UnsupportedCodec

logger = logging.getLogger(__name__)

ATTRIBUTE_PATTERN = re.compile(r'([A-Z0-9-]+)=("([^"]*)"|([^,]*))')


@dataclass(frozen=True)
class ByteRange:
    length: int
    offset: int

    @property
    def header_value(self) -> str:
        return f"bytes={self.offset}-{self.offset + self.length - 1}"


@dataclass(frozen=True)
class SegmentRef:
    url: str
    byte_range: Optional[ByteRange] = None
    duration: float = 0.0


@dataclass(frozen=True)
class Manifest:
    playlist_url: str
    segments: tuple[SegmentRef, ...]
    complete: bool = True

    @property
    def total_duration(self) -> float:
        return sum(segment.duration for segment in self.segments)


@dataclass
class Variant:
    url: str
    bandwidth: int = 0
    codecs: Optional[str] = None
    audio_only: bool = False
    attributes: Dict[str, str] = field(default_factory=dict)


def parse_attribute_list(attributes_str: str) -> Dict[str, str]:
    """Parse an M3U8 attribute list such as ``BANDWIDTH=96000,CODECS="mp4a.40.2"``."""
    attributes = {}
    for key, _, quoted_val, unquoted_val in ATTRIBUTE_PATTERN.findall(attributes_str):
        attributes[key] = quoted_val if quoted_val else unquoted_val
    return attributes


def _playlist_lines(content: str) -> List[str]:
    lines = [line.strip() for line in content.splitlines()]
    lines = [line for line in lines if line]
    if not lines or not lines[0].startswith("#EXTM3U"):
        raise MalformedManifest("Playlist does not start with #EXTM3U")
    return lines


def is_master_playlist(content: str) -> bool:
    return "#EXT-X-STREAM-INF" in content


def _is_audio_only(attributes: Dict[str, str]) -> bool:
    if "RESOLUTION" in attributes:
        return False
    codecs = attributes.get("CODECS")
    if codecs is None:
        return True
    return all(codec.strip().startswith("mp4a") for codec in codecs.split(","))


def parse_master_playlist(content: str, base_url: str) -> List[Variant]:
    """
    Parse an HLS master playlist into its variants, in file order.

    Audio renditions declared with ``#EXT-X-MEDIA:TYPE=AUDIO`` and a URI are
    returned as audio-only variants ahead of the stream variants.

    Args:
        content (str): The content of the M3U8 master playlist.
        base_url (str): URL the playlist was fetched from, for resolving relative URIs.

    Returns:
        List[Variant]: The variants found.
    """
    lines = _playlist_lines(content)
    renditions = []
    variants = []

    for i, line in enumerate(lines):
        if line.startswith("#EXT-X-MEDIA:"):
            attributes = parse_attribute_list(line.split(":", 1)[1])
            if attributes.get("TYPE") == "AUDIO" and attributes.get("URI"):
                renditions.append(
                    Variant(url=urljoin(base_url, attributes["URI"]), audio_only=True, attributes=attributes)
                )
        elif line.startswith("#EXT-X-STREAM-INF:"):
            attributes = parse_attribute_list(line.split(":", 1)[1])
            # The next line should be the stream URL
            if i + 1 >= len(lines) or lines[i + 1].startswith("#"):
                raise MalformedManifest(f"#EXT-X-STREAM-INF without a URI: {line}")
            try:
                bandwidth = int(attributes.get("BANDWIDTH", "0"))
            except ValueError:
                raise MalformedManifest(f"Invalid BANDWIDTH in {line}")
            variants.append(
                Variant(
                    url=urljoin(base_url, lines[i + 1]),
                    bandwidth=bandwidth,
                    codecs=attributes.get("CODECS"),
                    audio_only=_is_audio_only(attributes),
                    attributes=attributes,
                )
            )

    if not renditions and not variants:
        raise MalformedManifest("Master playlist lists no variants")
    return renditions + variants


def select_audio_variant(variants: List[Variant]) -> Variant:
    """Pick the audio-only variant, or the first one listed when there are several or none."""
    audio_variants = [variant for variant in variants if variant.audio_only]
    if len(audio_variants) > 1:
        logger.debug(f"{len(audio_variants)} audio-only variants, using the first")
    selected = audio_variants[0] if audio_variants else variants[0]
    logger.debug(f"Selected variant {selected.url} (bandwidth {selected.bandwidth})")
    return selected


def _parse_byte_range(value: str) -> tuple[int, Optional[int]]:
    length_str, _, offset_str = value.partition("@")
    try:
        length = int(length_str)
        offset = int(offset_str) if offset_str else None
    except ValueError:
        raise MalformedManifest(f"Invalid #EXT-X-BYTERANGE value: {value}")
    if length <= 0:
        raise MalformedManifest(f"Invalid #EXT-X-BYTERANGE length: {value}")
    return length, offset


def parse_media_playlist(content: str, playlist_url: str) -> Manifest:
    """
    Parse an HLS media playlist into a Manifest.

    Args:
        content (str): The content of the M3U8 media playlist.
        playlist_url (str): URL the playlist was fetched from, for resolving relative URIs.

    Returns:
        Manifest: Segments in playlist order.

    Raises:
        MalformedManifest: If the playlist cannot be parsed, is encrypted or lists no segments.
        UnsupportedCodec: If the segments are fragmented MP4 rather than MPEG-TS.
    """
    lines = _playlist_lines(content)
    segments = []
    range_ends: Dict[str, int] = {}
    duration = 0.0
    pending_range: Optional[tuple[int, Optional[int]]] = None
    complete = False

    for line in lines[1:]:
        if line.startswith("#EXTINF:"):
            value = line.split(":", 1)[1].split(",", 1)[0]
            try:
                duration = float(value)
            except ValueError:
                raise MalformedManifest(f"Invalid #EXTINF duration: {line}")
        elif line.startswith("#EXT-X-BYTERANGE:"):
            pending_range = _parse_byte_range(line.split(":", 1)[1])
        elif line.startswith("#EXT-X-KEY:"):
            method = parse_attribute_list(line.split(":", 1)[1]).get("METHOD", "NONE")
            if method != "NONE":
                raise MalformedManifest(f"Encrypted playlists are not supported (METHOD={method})")
        elif line.startswith("#EXT-X-MAP:"):
            raise UnsupportedCodec("Fragmented MP4 segments are not supported")
        elif line.startswith("#EXT-X-STREAM-INF"):
            raise MalformedManifest("Unexpected #EXT-X-STREAM-INF in a media playlist")
        elif line == "#EXT-X-ENDLIST":
            complete = True
        elif line.startswith("#"):
            continue
        else:
            url = urljoin(playlist_url, line)
            byte_range = None
            if pending_range is not None:
                length, offset = pending_range
                if offset is None:
                    if url not in range_ends:
                        raise MalformedManifest(f"#EXT-X-BYTERANGE without offset on first range of {url}")
                    offset = range_ends[url]
                byte_range = ByteRange(length=length, offset=offset)
                range_ends[url] = offset + length
            segments.append(SegmentRef(url=url, byte_range=byte_range, duration=duration))
            duration = 0.0
            pending_range = None

    if not segments:
        raise MalformedManifest(f"Playlist {playlist_url} lists no segments")
    if not complete:
        logger.warning(f"Playlist {playlist_url} has no #EXT-X-ENDLIST, using the {len(segments)} segments listed")
    return Manifest(playlist_url=playlist_url, segments=tuple(segments), complete=complete)
