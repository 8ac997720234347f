from .convert import (
    average_amplitude,
    decimate,
    decode_pcm16,
    encode_pcm16,
    pcm16_to_float,
    resample_linear,
    to_wire_rate,
)

__all__ = [
    "average_amplitude",
    "decimate",
    "decode_pcm16",
    "encode_pcm16",
    "pcm16_to_float",
    "resample_linear",
    "to_wire_rate",
]
