"""
Line protocol spoken between a session and its interpreter.

Requests:   "<request_id>:<base64(source)>\\n"
Responses:  "<tag>:<payload>\\n"

The image/png tag carries "<request_id>;<base64 png>". Every other tag
is a status line that is only logged.
"""

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Optional

IMAGE_PNG = "image/png"
STATUS = "status"


class MessageKind(str, Enum):
    """Kind of a decoded response line."""
    IMAGE_PNG = "image/png"
    STATUS = "status"
    MALFORMED = "malformed"


@dataclass
class KernelMessage:
    """A decoded response line."""
    kind: MessageKind
    tag: str
    payload: str
    request_id: Optional[int] = None
    data: Optional[str] = None


def encode_request(request_id: int, source: str) -> bytes:
    """Encode an execution request line."""
    encoded = base64.b64encode(source.encode("utf-8")).decode("ascii")
    return f"{request_id}:{encoded}\n".encode("ascii")


def decode_request(line: str) -> tuple[int, str]:
    """
    Decode an execution request line.

    Raises:
        ValueError: if the line is not "<int>:<base64>"
    """
    head, sep, body = line.rstrip("\r\n").partition(":")
    if not sep:
        raise ValueError(f"Missing ':' in request line: {line[:40]!r}")
    try:
        source = base64.b64decode(body, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"Bad request payload: {e}") from e
    return int(head), source


def encode_response(tag: str, payload: str) -> bytes:
    return f"{tag}:{payload}\n".encode("utf-8")


def encode_image(request_id: int, image_b64: str) -> bytes:
    return encode_response(IMAGE_PNG, f"{request_id};{image_b64}")


def encode_status(request_id: int, status: str) -> bytes:
    return encode_response(STATUS, f"{request_id};{status}")


def decode_line(line: str) -> KernelMessage:
    """
    Decode one response line. Never raises.

    Lines without a tag, or image lines whose payload is not
    "<int>;<data>", decode as MALFORMED.
    """
    line = line.rstrip("\r\n")
    tag, sep, payload = line.partition(":")
    if not sep:
        return KernelMessage(kind=MessageKind.MALFORMED, tag="", payload=line)

    if tag != IMAGE_PNG:
        return KernelMessage(kind=MessageKind.STATUS, tag=tag, payload=payload)

    head, sep, data = payload.partition(";")
    try:
        request_id = int(head)
    except ValueError:
        return KernelMessage(kind=MessageKind.MALFORMED, tag=tag, payload=payload)
    if not sep:
        return KernelMessage(kind=MessageKind.MALFORMED, tag=tag, payload=payload)

    return KernelMessage(
        kind=MessageKind.IMAGE_PNG,
        tag=tag,
        payload=payload,
        request_id=request_id,
        data=data,
    )
