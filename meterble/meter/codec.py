"""Decoding of meter advertisement and notification payloads.

Every payload variant is a fixed byte layout identified by its length:

    compact service data    3 bytes   battery only
    notified GATT value     4 bytes   humidity, temperature
    standard service data   6 bytes   humidity, temperature, battery
    manufacturer data      14 bytes   humidity, temperature, battery

Field encoding shared by all variants:

    humidity      bit[6:0] of the humidity byte, bit 7 reserved
    temperature   t0 = byte at the temperature offset, t1 = the next byte
                  t1 bit[7]   1: above zero, 0: below zero
                  t1 bit[6:0] integer part, 0..127
                  t0 bit[3:0] tenths
    battery       bit[6:0] of the battery byte, 0..100
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .errors import DecodeError, TruncatedPayload, UnrecognizedLength
from .models import Reading
from ..shared.logging import hex_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariantLayout:
    """Byte offsets for one payload variant. None means the field is absent."""
    length: int
    humidity_offset: Optional[int]
    temperature_offset: Optional[int]
    battery_offset: Optional[int]


class PayloadVariant(Enum):
    COMPACT_SERVICE_DATA = VariantLayout(3, None, None, 2)
    NOTIFIED_VALUE = VariantLayout(4, 3, 1, None)
    SERVICE_DATA = VariantLayout(6, 5, 3, 2)
    MANUFACTURER_DATA = VariantLayout(14, 12, 10, 5)

    @property
    def layout(self) -> VariantLayout:
        return self.value

    @classmethod
    def for_length(cls, length: int) -> "PayloadVariant":
        """Look up the variant for a payload length.

        Raises:
            UnrecognizedLength: If no variant has this length.
        """
        for variant in cls:
            if variant.layout.length == length:
                return variant
        raise UnrecognizedLength(length)


def _check_bounds(data: bytes, layout: VariantLayout) -> None:
    """Raise TruncatedPayload for the first field that would read past the end."""
    last = len(data) - 1
    required = (
        ("humidity", layout.humidity_offset),
        ("temperature", layout.temperature_offset),
        ("temperature", None if layout.temperature_offset is None
         else layout.temperature_offset + 1),
        ("battery", layout.battery_offset),
    )
    for name, offset in required:
        if offset is not None and offset > last:
            raise TruncatedPayload(name, offset, len(data))


def decode_temperature(t0: int, t1: int) -> float:
    """Decode the two temperature bytes into degrees Celsius."""
    multiplier = 1.0 if t1 & 0x80 else -1.0
    integer = t1 & 0x7F
    decimal = (t0 & 0x0F) * 0.1
    return round(multiplier * (integer + decimal), 1)


def decode(data: bytes, variant: Optional[PayloadVariant] = None) -> Reading:
    """Decode a raw payload into a Reading.

    Args:
        data: Raw payload bytes.
        variant: Force a specific layout. If None, the layout is selected
            by the payload length.

    Returns:
        The decoded reading.

    Raises:
        UnrecognizedLength: If no variant was given and the length is unknown.
        TruncatedPayload: If a field of the layout lies outside the buffer.
    """
    data = bytes(data)
    if variant is None:
        variant = PayloadVariant.for_length(len(data))
    layout = variant.layout

    _check_bounds(data, layout)

    humidity = None
    temperature = None
    battery = None

    if layout.humidity_offset is not None:
        humidity = data[layout.humidity_offset] & 0x7F
    if layout.temperature_offset is not None:
        offset = layout.temperature_offset
        temperature = decode_temperature(data[offset], data[offset + 1])
    if layout.battery_offset is not None:
        battery = data[layout.battery_offset] & 0x7F

    return Reading(temperature=temperature, humidity=humidity, battery=battery)


ADVERTISEMENT_VARIANTS = frozenset({
    PayloadVariant.COMPACT_SERVICE_DATA,
    PayloadVariant.SERVICE_DATA,
    PayloadVariant.MANUFACTURER_DATA,
})


def decode_advertisement(data: bytes) -> Reading:
    """Decode service or manufacturer data from an advertisement.

    Only the advertisement layouts are accepted; a 4-byte buffer is the GATT
    notification layout and is rejected as UnrecognizedLength.
    """
    variant = PayloadVariant.for_length(len(data))
    if variant not in ADVERTISEMENT_VARIANTS:
        raise UnrecognizedLength(len(data))
    return decode(data, variant)


def decode_notification(data: bytes) -> Reading:
    """Decode the value notified in reply to the read-display command.

    Only the 4-byte layout is accepted. Longer buffers are rejected as
    UnrecognizedLength, shorter ones fail the bounds check.
    """
    layout = PayloadVariant.NOTIFIED_VALUE.layout
    if len(data) > layout.length:
        raise UnrecognizedLength(len(data))
    return decode(data, PayloadVariant.NOTIFIED_VALUE)


def try_decode(
    data: bytes,
    decoder: Callable[[bytes], Reading] = decode,
    source: str = "payload",
) -> Optional[Reading]:
    """Decode a payload, logging and discarding it when it is malformed.

    Args:
        data: Raw payload bytes.
        decoder: One of decode, decode_advertisement or decode_notification.
        source: Where the payload came from, for the log line.
    """
    try:
        reading = decoder(data)
    except DecodeError as e:
        logger.debug(f"Discarding {source} [{hex_bytes(data)}]: {e}")
        return None
    logger.debug(f"Decoded {source} [{hex_bytes(data)}]: {reading}")
    return reading
