"""
AAC bitstream helpers.

ADTS header parsing and synthesis, and the parts of LATM/LOAS
(ISO/IEC 14496-3) needed to lift access units out of a LATM stream and
re-wrap them as ADTS frames.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sounds_proxy.exceptions import CorruptContainer, UnsupportedCodec

logger = logging.getLogger(__name__)

# AAC sample rate index table
AAC_SAMPLE_RATES = [96000, 88200, 64000, 48000, 44100, 32000, 24000, 22050, 16000, 12000, 11025, 8000, 7350, 0, 0, 0]

AUDIO_OBJECT_TYPES = {1: "AAC Main", 2: "AAC LC", 3: "AAC SSR", 4: "AAC LTP", 5: "SBR", 29: "PS"}

ADTS_HEADER_SIZE = 7
ADTS_CRC_HEADER_SIZE = 9
LOAS_HEADER_SIZE = 3


@dataclass(frozen=True)
class AudioParams:
    object_type: int  # MPEG-4 audio object type, 2 = AAC LC
    sampling_index: int
    channel_config: int

    @property
    def sample_rate(self) -> int:
        return AAC_SAMPLE_RATES[self.sampling_index]

    def __str__(self) -> str:
        name = AUDIO_OBJECT_TYPES.get(self.object_type, f"object type {self.object_type}")
        return f"{name}, {self.sample_rate} Hz, channel config {self.channel_config}"


@dataclass(frozen=True)
class AdtsHeader:
    params: AudioParams
    frame_length: int  # header included
    header_length: int


def is_adts_sync(data, offset: int = 0) -> bool:
    """Check for the 12-bit ADTS syncword followed by layer 00."""
    return data[offset] == 0xFF and (data[offset + 1] & 0xF6) == 0xF0


def parse_adts_header(data, offset: int = 0) -> Optional[AdtsHeader]:
    """
    Parse the fixed and variable ADTS header fields at ``offset``.

    Returns None when fewer than 7 bytes are available. The caller is
    responsible for checking the syncword first.
    """
    if len(data) - offset < ADTS_HEADER_SIZE:
        return None
    b1, b2, b3, b4, b5 = data[offset + 1 : offset + 6]
    params = AudioParams(
        object_type=(b2 >> 6) + 1,
        sampling_index=(b2 >> 2) & 0x0F,
        channel_config=((b2 & 0x01) << 2) | (b3 >> 6),
    )
    frame_length = ((b3 & 0x03) << 11) | (b4 << 3) | (b5 >> 5)
    header_length = ADTS_HEADER_SIZE if b1 & 0x01 else ADTS_CRC_HEADER_SIZE
    return AdtsHeader(params=params, frame_length=frame_length, header_length=header_length)


def make_adts_header(payload_length: int, params: AudioParams) -> bytes:
    """
    Generate a 7-byte ADTS header (no CRC) for an AAC access unit.

    Args:
        payload_length: Length of the raw AAC access unit, without header.
        params: Object type, sampling index and channel configuration of the stream.

    Returns:
        7-byte ADTS header
    """
    # ADTS profile is the audio object type - 1
    adts_profile = params.object_type - 1
    full_length = payload_length + ADTS_HEADER_SIZE
    if full_length > 0x1FFF:
        raise CorruptContainer(f"AAC access unit of {payload_length} bytes does not fit in an ADTS frame")

    header = bytearray(7)
    # Syncword 0xFFF, MPEG-4, layer 00, protection absent
    header[0] = 0xFF
    header[1] = 0xF1
    # profile(2) + freq_index(4) + private(1) + channel_config_high(1)
    header[2] = ((adts_profile & 0x03) << 6) | ((params.sampling_index & 0x0F) << 2) | ((params.channel_config >> 2) & 0x01)
    # channel_config_low(2) + original/home/copyright bits(4) + frame_len_high(2)
    header[3] = ((params.channel_config & 0x03) << 6) | ((full_length >> 11) & 0x03)
    header[4] = (full_length >> 3) & 0xFF
    # frame_len_low(3) + buffer fullness 0x7FF (VBR) high bits(5)
    header[5] = ((full_length & 0x07) << 5) | 0x1F
    # buffer fullness low bits(6) + one raw data block(2)
    header[6] = 0xFC
    return bytes(header)


class BitReader:
    """MSB-first bit reader over a byte string."""

    def __init__(self, data: bytes):
        self.data = data
        self.position = 0

    @property
    def bits_left(self) -> int:
        return len(self.data) * 8 - self.position

    def read(self, count: int) -> int:
        if count > self.bits_left:
            raise CorruptContainer("LATM element is truncated")
        value = 0
        for _ in range(count):
            byte = self.data[self.position >> 3]
            value = (value << 1) | ((byte >> (7 - (self.position & 7))) & 0x01)
            self.position += 1
        return value

    def skip(self, count: int) -> None:
        if count > self.bits_left:
            raise CorruptContainer("LATM element is truncated")
        self.position += count

    def read_bytes(self, count: int) -> bytes:
        if count * 8 > self.bits_left:
            raise CorruptContainer("LATM element is truncated")
        if self.position & 7 == 0:
            start = self.position >> 3
            self.position += count * 8
            return bytes(self.data[start : start + count])
        return bytes(self.read(8) for _ in range(count))


@dataclass(frozen=True)
class LatmConfig:
    params: AudioParams
    audio_mux_version: int


def is_loas_sync(data, offset: int = 0) -> bool:
    """Check for the 11-bit LOAS AudioSyncStream syncword 0x2B7."""
    return data[offset] == 0x56 and (data[offset + 1] & 0xE0) == 0xE0


def loas_frame_length(data, offset: int = 0) -> int:
    """Length of the AudioMuxElement following a LOAS header."""
    return ((data[offset + 1] & 0x1F) << 8) | data[offset + 2]


def read_latm_value(reader: BitReader) -> int:
    bytes_for_value = reader.read(2)
    value = 0
    for _ in range(bytes_for_value + 1):
        value = (value << 8) | reader.read(8)
    return value


def _read_object_type(reader: BitReader) -> int:
    object_type = reader.read(5)
    if object_type == 31:
        object_type = 32 + reader.read(6)
    return object_type


def _read_sampling_index(reader: BitReader) -> int:
    index = reader.read(4)
    if index == 0x0F:
        reader.skip(24)
    return index


def parse_audio_specific_config(reader: BitReader) -> AudioParams:
    """
    Parse an AudioSpecificConfig down to the fields an ADTS header can carry.

    SBR and PS configurations are reduced to their core AAC layer, which is
    how HE-AAC is signalled implicitly in ADTS.
    """
    object_type = _read_object_type(reader)
    sampling_index = _read_sampling_index(reader)
    channel_config = reader.read(4)

    if object_type in (5, 29):
        _read_sampling_index(reader)  # extension sampling frequency
        object_type = _read_object_type(reader)

    if object_type not in (1, 2, 3, 4):
        raise UnsupportedCodec(f"Audio object type {object_type} cannot be carried in ADTS")
    if sampling_index >= 13:
        raise UnsupportedCodec("Explicit sampling frequencies cannot be carried in ADTS")
    if channel_config == 0:
        raise UnsupportedCodec("Channel layouts defined by a program config element are not supported")

    # GASpecificConfig
    reader.read(1)  # frameLengthFlag
    if reader.read(1):  # dependsOnCoreCoder
        reader.skip(14)
    if reader.read(1):  # extensionFlag
        reader.read(1)

    return AudioParams(object_type=object_type, sampling_index=sampling_index, channel_config=channel_config)


def parse_stream_mux_config(reader: BitReader) -> LatmConfig:
    """Parse a StreamMuxConfig carrying a single program, layer and sub-frame."""
    audio_mux_version = reader.read(1)
    if audio_mux_version and reader.read(1):
        raise UnsupportedCodec("LATM audioMuxVersionA 1 is not supported")
    if audio_mux_version:
        read_latm_value(reader)  # taraBufferFullness

    reader.read(1)  # allStreamsSameTimeFraming
    num_sub_frames = reader.read(6)
    num_program = reader.read(4)
    num_layer = reader.read(3)
    if num_sub_frames or num_program or num_layer:
        raise UnsupportedCodec("Multiplexed LATM streams are not supported")

    if audio_mux_version:
        config_length = read_latm_value(reader)
        start = reader.position
        params = parse_audio_specific_config(reader)
        used = reader.position - start
        if used > config_length:
            raise CorruptContainer("AudioSpecificConfig overruns its declared length")
        reader.skip(config_length - used)
    else:
        params = parse_audio_specific_config(reader)

    frame_length_type = reader.read(3)
    if frame_length_type != 0:
        raise UnsupportedCodec(f"LATM frameLengthType {frame_length_type} is not supported")
    reader.read(8)  # latmBufferFullness

    if reader.read(1):  # otherDataPresent
        if audio_mux_version:
            read_latm_value(reader)
        else:
            while True:
                escape = reader.read(1)
                reader.read(8)
                if not escape:
                    break
    if reader.read(1):  # crcCheckPresent
        reader.read(8)

    return LatmConfig(params=params, audio_mux_version=audio_mux_version)


def parse_audio_mux_element(
    element: bytes, config: Optional[LatmConfig]
) -> tuple[Optional[LatmConfig], Optional[bytes]]:
    """
    Parse one AudioMuxElement (muxConfigPresent = 1).

    Returns the configuration in effect and the access unit it carries. The
    access unit is None while no StreamMuxConfig has been seen yet.
    """
    reader = BitReader(element)
    if not reader.read(1):  # useSameStreamMux
        config = parse_stream_mux_config(reader)
    elif config is None:
        return None, None

    # PayloadLengthInfo
    length = 0
    while True:
        value = reader.read(8)
        length += value
        if value != 255:
            break

    return config, reader.read_bytes(length)
