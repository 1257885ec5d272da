"""GrandChase binary formats: P3M models and FRM animations."""

from chaseconv.converters.grandchase.p3m import decode_p3m, encode_p3m
from chaseconv.converters.grandchase.frm import decode_frm, encode_frm

__all__ = [
    "decode_p3m",
    "encode_p3m",
    "decode_frm",
    "encode_frm",
]
