"""
Streaming MPEG-TS demuxer producing ADTS frames.

The segments of an HLS rendition are treated as one continuous transport
stream. Bytes are pushed in arbitrary chunks; all parser state (partial
packets, PSI sections, PES headers, partial audio frames) lives in an
explicit ``DemuxState`` so a packet or frame split across two segment
buffers is reassembled transparently.

Supported audio:
- ADTS AAC (stream type 0x0F): frames are passed through untouched
- LATM/LOAS AAC (stream type 0x11): access units are re-wrapped in ADTS
"""

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from sounds_proxy.configs import settings
from sounds_proxy.exceptions import CorruptContainer, InconsistentStreamParameters, UnsupportedCodec
from sounds_proxy.remuxer.codec_utils import (
    ADTS_HEADER_SIZE,
    LOAS_HEADER_SIZE,
    AudioParams,
    LatmConfig,
    is_adts_sync,
    is_loas_sync,
    loas_frame_length,
    make_adts_header,
    parse_adts_header,
    parse_audio_mux_element,
)

logger = logging.getLogger(__name__)

# ============================================================================
# MPEG-TS Constants
# ============================================================================

TS_PACKET_SIZE = 188
TS_HEADER_SIZE = 4
TS_SYNC_BYTE = 0x47

PID_PAT = 0x0000
PID_NULL = 0x1FFF

TABLE_ID_PAT = 0x00
TABLE_ID_PMT = 0x02

STREAM_TYPE_AAC = 0x0F
STREAM_TYPE_AAC_LATM = 0x11

OTHER_AUDIO_STREAM_TYPES = {
    0x03: "MPEG-1 audio",
    0x04: "MPEG-2 audio",
    0x1C: "MPEG-4 audio without LATM",
    0x81: "AC-3",
    0x87: "E-AC-3",
}


# ============================================================================
# CRC32 for PSI sections
# ============================================================================

# Pre-computed CRC32 table for MPEG-2 (polynomial 0x04C11DB7)
_CRC32_TABLE = None


def _init_crc32_table():
    """Initialize CRC32 lookup table for MPEG-2."""
    global _CRC32_TABLE
    if _CRC32_TABLE is not None:
        return

    _CRC32_TABLE = []
    for i in range(256):
        crc = i << 24
        for _ in range(8):
            if crc & 0x80000000:
                crc = (crc << 1) ^ 0x04C11DB7
            else:
                crc <<= 1
        _CRC32_TABLE.append(crc & 0xFFFFFFFF)


def crc32_mpeg2(data: bytes) -> int:
    """Calculate CRC32 for MPEG-2 TS sections. A section including its own CRC yields 0."""
    _init_crc32_table()
    crc = 0xFFFFFFFF
    for byte in data:
        crc = (_CRC32_TABLE[((crc >> 24) ^ byte) & 0xFF] ^ (crc << 8)) & 0xFFFFFFFF
    return crc


# ============================================================================
# Demuxer state
# ============================================================================


@dataclass
class DemuxState:
    max_errors: int = 8
    remainder: bytes = b""  # incomplete TS packet carried into the next chunk
    pmt_pid: Optional[int] = None
    audio_pid: Optional[int] = None
    stream_type: Optional[int] = None
    continuity: Dict[int, int] = field(default_factory=dict)
    sections: Dict[int, bytearray] = field(default_factory=dict)
    in_pes: bool = False  # a PES start has been seen on the audio PID
    pes_header: Optional[bytearray] = None  # PES header still being collected
    es_buffer: bytearray = field(default_factory=bytearray)
    es_resync: bool = False  # audio data was lost, scan for the next syncword
    audio_params: Optional[AudioParams] = None
    latm_config: Optional[LatmConfig] = None
    sync_errors: int = 0
    continuity_errors: int = 0
    packets: int = 0
    frames: int = 0


def _record_sync_loss(state: DemuxState, skipped: int) -> None:
    state.sync_errors += 1
    logger.warning("[ts_demuxer] Lost TS sync, skipped %d bytes (%d/%d)", skipped, state.sync_errors, state.max_errors)
    if state.sync_errors > state.max_errors:
        raise CorruptContainer(f"Lost MPEG-TS sync {state.sync_errors} times")
    _drop_audio_data(state)


def _record_continuity_error(state: DemuxState, pid: int, reason: str) -> None:
    state.continuity_errors += 1
    logger.warning(
        "[ts_demuxer] PID 0x%04x: %s (%d/%d)", pid, reason, state.continuity_errors, state.max_errors
    )
    if state.continuity_errors > state.max_errors:
        raise CorruptContainer(f"Too many MPEG-TS continuity errors ({state.continuity_errors})")
    if pid == state.audio_pid:
        _drop_audio_data(state)


def _drop_audio_data(state: DemuxState) -> None:
    """Discard partial audio data and wait for the next PES packet."""
    state.in_pes = False
    state.pes_header = None
    state.es_buffer.clear()
    state.es_resync = True


def _check_params(state: DemuxState, params: AudioParams) -> None:
    if state.audio_params is None:
        state.audio_params = params
        logger.info("[ts_demuxer] Audio stream: %s", params)
    elif params != state.audio_params:
        raise InconsistentStreamParameters(f"Audio parameters changed from {state.audio_params} to {params}")


# ============================================================================
# Packet layer
# ============================================================================


def _find_sync(buffer: bytes, start: int) -> int:
    """Find the next sync byte that is followed by another one a packet later."""
    position = buffer.find(b"\x47", start)
    while position != -1:
        following = position + TS_PACKET_SIZE
        if following >= len(buffer) or buffer[following] == TS_SYNC_BYTE:
            return position
        position = buffer.find(b"\x47", position + 1)
    return -1


def demux_chunk(state: DemuxState, data: bytes) -> List[bytes]:
    """
    Feed the next chunk of the transport stream to the demuxer.

    Args:
        state: Parser state carried between calls.
        data: Any number of bytes continuing the stream.

    Returns:
        The ADTS frames completed by this chunk, in stream order.
    """
    buffer = state.remainder + data if state.remainder else bytes(data)
    view = memoryview(buffer)
    frames: List[bytes] = []
    offset = 0

    while len(buffer) - offset >= TS_PACKET_SIZE:
        if buffer[offset] != TS_SYNC_BYTE:
            position = _find_sync(buffer, offset + 1)
            if position == -1:
                _record_sync_loss(state, len(buffer) - offset)
                offset = len(buffer)
                break
            _record_sync_loss(state, position - offset)
            offset = position
            continue
        _process_packet(state, view[offset : offset + TS_PACKET_SIZE], frames)
        offset += TS_PACKET_SIZE

    state.remainder = buffer[offset:]
    return frames


def _process_packet(state: DemuxState, packet: memoryview, frames: List[bytes]) -> None:
    state.packets += 1
    pid = ((packet[1] & 0x1F) << 8) | packet[2]
    if pid == PID_NULL or pid not in (PID_PAT, state.pmt_pid, state.audio_pid):
        return

    if packet[1] & 0x80:
        _record_continuity_error(state, pid, "transport error indicator set")
        return

    scrambling = packet[3] >> 6
    adaptation_control = (packet[3] >> 4) & 0x03
    counter = packet[3] & 0x0F
    payload_start = TS_HEADER_SIZE
    discontinuity = False

    if adaptation_control & 0x02:
        adaptation_length = packet[4]
        if adaptation_length > TS_PACKET_SIZE - TS_HEADER_SIZE - 1:
            _record_continuity_error(state, pid, "adaptation field overruns the packet")
            return
        if adaptation_length:
            discontinuity = bool(packet[5] & 0x80)
        payload_start = TS_HEADER_SIZE + 1 + adaptation_length

    if not adaptation_control & 0x01:
        # No payload, the continuity counter does not advance
        return
    if scrambling:
        raise UnsupportedCodec("Scrambled transport streams are not supported")

    last = state.continuity.get(pid)
    state.continuity[pid] = counter
    if last is not None and not discontinuity:
        if counter == last:
            # Duplicate packet
            return
        if counter != (last + 1) & 0x0F:
            _record_continuity_error(state, pid, f"continuity counter jumped from {last} to {counter}")

    payload = packet[payload_start:]
    payload_unit_start = bool(packet[1] & 0x40)
    if not payload:
        # The adaptation field fills the packet
        if payload_unit_start:
            _record_continuity_error(state, pid, "payload unit start without payload")
        return
    if pid == state.audio_pid:
        _handle_audio_payload(state, payload, payload_unit_start, frames)
    else:
        _handle_section_payload(state, pid, payload, payload_unit_start)


# ============================================================================
# PSI: PAT / PMT
# ============================================================================


def _section_length(section: bytearray) -> Optional[int]:
    if len(section) < 3:
        return None
    return 3 + (((section[1] & 0x0F) << 8) | section[2])


def _section_complete(section: bytearray) -> bool:
    if section and section[0] == 0xFF:
        return True
    length = _section_length(section)
    return length is not None and len(section) >= length


def _handle_section_payload(state: DemuxState, pid: int, payload: memoryview, payload_unit_start: bool) -> None:
    if payload_unit_start:
        pointer = payload[0]
        previous = state.sections.pop(pid, None)
        if previous is not None:
            previous.extend(payload[1 : 1 + pointer])
            _parse_section(state, pid, previous)
        state.sections[pid] = bytearray(payload[1 + pointer :])
    elif pid in state.sections:
        state.sections[pid].extend(payload)
    else:
        return

    section = state.sections[pid]
    if _section_complete(section):
        del state.sections[pid]
        _parse_section(state, pid, section)


def _parse_section(state: DemuxState, pid: int, section: bytearray) -> None:
    if not section or section[0] == 0xFF:
        return
    length = _section_length(section)
    if length is None or len(section) < length:
        logger.debug("[ts_demuxer] Dropping incomplete section on PID 0x%04x", pid)
        return
    data = bytes(section[:length])
    if crc32_mpeg2(data) != 0:
        _record_continuity_error(state, pid, "section CRC mismatch")
        return

    if pid == PID_PAT and data[0] == TABLE_ID_PAT:
        _parse_pat(state, data)
    elif pid == state.pmt_pid and data[0] == TABLE_ID_PMT:
        _parse_pmt(state, data)


def _parse_pat(state: DemuxState, data: bytes) -> None:
    # Program loop between the 8-byte section header and the CRC
    for offset in range(8, len(data) - 4 - 3, 4):
        program_number = (data[offset] << 8) | data[offset + 1]
        pid = ((data[offset + 2] & 0x1F) << 8) | data[offset + 3]
        if program_number == 0:
            continue  # network PID
        if state.pmt_pid != pid:
            logger.debug("[ts_demuxer] Program %d: PMT on PID 0x%04x", program_number, pid)
            state.pmt_pid = pid
        return


def _parse_pmt(state: DemuxState, data: bytes) -> None:
    program_info_length = ((data[10] & 0x0F) << 8) | data[11]
    offset = 12 + program_info_length
    end = len(data) - 4
    streams = []
    while offset + 5 <= end:
        stream_type = data[offset]
        pid = ((data[offset + 1] & 0x1F) << 8) | data[offset + 2]
        es_info_length = ((data[offset + 3] & 0x0F) << 8) | data[offset + 4]
        streams.append((stream_type, pid))
        offset += 5 + es_info_length

    selected = next(((t, p) for t, p in streams if t in (STREAM_TYPE_AAC, STREAM_TYPE_AAC_LATM)), None)
    if selected is None:
        other_audio = [OTHER_AUDIO_STREAM_TYPES[t] for t, _ in streams if t in OTHER_AUDIO_STREAM_TYPES]
        if other_audio:
            raise UnsupportedCodec(f"Unsupported audio codec: {other_audio[0]}")
        raise UnsupportedCodec(f"Program has no audio stream (stream types {[hex(t) for t, _ in streams]})")

    stream_type, pid = selected
    if state.audio_pid is None:
        logger.debug("[ts_demuxer] Audio on PID 0x%04x, stream type 0x%02x", pid, stream_type)
        state.audio_pid = pid
        state.stream_type = stream_type
    elif stream_type != state.stream_type:
        raise InconsistentStreamParameters(
            f"Audio stream type changed from 0x{state.stream_type:02x} to 0x{stream_type:02x}"
        )
    elif pid != state.audio_pid:
        logger.info("[ts_demuxer] Audio moved from PID 0x%04x to 0x%04x", state.audio_pid, pid)
        state.audio_pid = pid
        _drop_audio_data(state)


# ============================================================================
# PES and elementary stream
# ============================================================================


def _handle_audio_payload(state: DemuxState, payload: memoryview, payload_unit_start: bool, frames: List[bytes]) -> None:
    if payload_unit_start:
        state.in_pes = True
        state.pes_header = bytearray(payload)
    elif not state.in_pes:
        # Joined in the middle of a PES packet
        return
    elif state.pes_header is not None:
        state.pes_header.extend(payload)
    else:
        state.es_buffer.extend(payload)
        _split_frames(state, frames)
        return

    header = state.pes_header
    if len(header) < 9:
        return
    if header[0:3] != b"\x00\x00\x01":
        _record_continuity_error(state, state.audio_pid, "missing PES start code")
        return
    header_length = 9 + header[8]
    if len(header) < header_length:
        return
    state.es_buffer.extend(header[header_length:])
    state.pes_header = None
    _split_frames(state, frames)


def _split_frames(state: DemuxState, frames: List[bytes]) -> None:
    if state.stream_type == STREAM_TYPE_AAC_LATM:
        consumed = _split_loas(state, frames)
    else:
        consumed = _split_adts(state, frames)
    del state.es_buffer[:consumed]


def _find_adts_sync(buffer: bytearray, start: int) -> int:
    position = buffer.find(b"\xff", start)
    while position != -1 and position + 1 < len(buffer):
        if buffer[position + 1] & 0xF6 == 0xF0:
            return position
        position = buffer.find(b"\xff", position + 1)
    return len(buffer) if position == -1 else position


def _split_adts(state: DemuxState, frames: List[bytes]) -> int:
    buffer = state.es_buffer
    offset = 0
    while len(buffer) - offset >= ADTS_HEADER_SIZE:
        header = parse_adts_header(buffer, offset) if is_adts_sync(buffer, offset) else None
        valid = (
            header is not None
            and header.frame_length >= header.header_length
            and header.params.sampling_index < 13
        )
        if state.es_resync and valid and state.audio_params is not None:
            valid = header.params == state.audio_params
        if not valid:
            if not state.es_resync:
                found = bytes(buffer[offset : offset + 4]).hex()
                raise CorruptContainer(f"Expected an ADTS frame on PID 0x{state.audio_pid:04x}, found {found}")
            offset = _find_adts_sync(buffer, offset + 1)
            continue

        if len(buffer) - offset < header.frame_length:
            break
        _check_params(state, header.params)
        if state.es_resync:
            logger.info("[ts_demuxer] Resynchronised on ADTS frame after %d frames", state.frames)
            state.es_resync = False
        frames.append(bytes(buffer[offset : offset + header.frame_length]))
        state.frames += 1
        offset += header.frame_length
    return offset


def _find_loas_sync(buffer: bytearray, start: int) -> int:
    position = buffer.find(b"\x56", start)
    while position != -1 and position + 1 < len(buffer):
        if buffer[position + 1] & 0xE0 == 0xE0:
            return position
        position = buffer.find(b"\x56", position + 1)
    return len(buffer) if position == -1 else position


def _split_loas(state: DemuxState, frames: List[bytes]) -> int:
    buffer = state.es_buffer
    offset = 0
    while len(buffer) - offset >= LOAS_HEADER_SIZE:
        if not is_loas_sync(buffer, offset):
            if not state.es_resync:
                found = bytes(buffer[offset : offset + 3]).hex()
                raise CorruptContainer(f"Expected a LOAS frame on PID 0x{state.audio_pid:04x}, found {found}")
            offset = _find_loas_sync(buffer, offset + 1)
            continue

        end = offset + LOAS_HEADER_SIZE + loas_frame_length(buffer, offset)
        if len(buffer) < end:
            break
        element = bytes(buffer[offset + LOAS_HEADER_SIZE : end])
        offset = end

        config, access_unit = parse_audio_mux_element(element, state.latm_config)
        if config is None:
            logger.debug("[ts_demuxer] Skipping LATM frame received before any StreamMuxConfig")
            continue
        state.latm_config = config
        state.es_resync = False
        _check_params(state, config.params)
        frames.append(make_adts_header(len(access_unit), config.params) + access_unit)
        state.frames += 1
    return offset


def begin_segment(state: DemuxState) -> None:
    """Mark an HLS segment boundary. Packagers may restart continuity counters at each segment."""
    state.continuity.clear()


def finish(state: DemuxState) -> None:
    """
    Validate the end of the stream.

    Raises:
        CorruptContainer: If the stream never produced an audio frame.
    """
    if state.remainder:
        logger.warning("[ts_demuxer] Discarding %d trailing bytes of an incomplete TS packet", len(state.remainder))
        state.remainder = b""
    if state.es_buffer:
        logger.warning("[ts_demuxer] Discarding %d bytes of an incomplete audio frame", len(state.es_buffer))
        state.es_buffer.clear()

    if state.frames == 0:
        if state.pmt_pid is None:
            raise CorruptContainer("No program association table found in the stream")
        if state.audio_pid is None:
            raise CorruptContainer("No program map table found in the stream")
        raise CorruptContainer("Stream contains no audio frames")


async def remux_to_adts(segments: AsyncIterator[bytes], max_errors: Optional[int] = None) -> AsyncIterator[bytes]:
    """
    Demux a sequence of TS segment buffers into ADTS frames.

    Frames are yielded as soon as they are complete; neither the source nor
    the output is ever held in full.
    """
    state = DemuxState(max_errors=settings.max_container_errors if max_errors is None else max_errors)
    async for segment in segments:
        begin_segment(state)
        for frame in demux_chunk(state, segment):
            yield frame
    finish(state)
    logger.info(
        "[ts_demuxer] Remuxed %d frames from %d packets (%d sync losses, %d continuity errors)",
        state.frames,
        state.packets,
        state.sync_errors,
        state.continuity_errors,
    )
