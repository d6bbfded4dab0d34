#!/usr/bin/env python3
"""
Hold Metadata Codec

Every hold carries a SYNCV1 tag in its description:

    SYNCV1:<base64url(JSON(SourceRef))>

The tag is the only state that survives between runs, so the encoding has to
stay byte-for-byte stable: compact JSON in wire field order, UTF-8, unpadded
base64url.
"""

import base64
import binascii
import json
import re
from typing import Optional

from holdsync.core.models import SourceRef

METADATA_PREFIX = 'SYNCV1:'
KEY_SEPARATOR = '::'

_WIRE_FIELDS = ('srcAccount', 'srcCalendar', 'eventId', 'start', 'end', 'title')
_PAYLOAD_PATTERN = re.compile(r'[A-Za-z0-9_-]+=*')


def encode_source_ref(source: SourceRef) -> str:
    payload = json.dumps(source.to_wire(), separators=(',', ':'), ensure_ascii=False)
    encoded = base64.urlsafe_b64encode(payload.encode('utf-8')).decode('ascii')
    return f"{METADATA_PREFIX}{encoded.rstrip('=')}"


def decode_source_ref(description: Optional[str]) -> Optional[SourceRef]:
    """
    Recover the SourceRef embedded in an event description.

    The tag may sit anywhere in the text. Anything that is not a well-formed
    tag (no prefix, bad base64, bad JSON, missing or non-string fields) means
    the event is not ours, so None is returned instead of raising.
    """
    if not description:
        return None

    index = description.find(METADATA_PREFIX)
    if index < 0:
        return None

    match = _PAYLOAD_PATTERN.match(description, index + len(METADATA_PREFIX))
    if not match:
        return None

    encoded = match.group(0).rstrip('=')
    try:
        raw = base64.urlsafe_b64decode(encoded + '=' * (-len(encoded) % 4))
        parsed = json.loads(raw.decode('utf-8'))
    except (binascii.Error, ValueError, RecursionError):
        # UnicodeDecodeError and JSONDecodeError are both ValueErrors;
        # deeply nested JSON from foreign text exhausts the parser stack
        return None

    if not isinstance(parsed, dict):
        return None
    if not all(isinstance(parsed.get(name), str) for name in _WIRE_FIELDS):
        return None

    return SourceRef(
        src_account=parsed['srcAccount'],
        src_calendar=parsed['srcCalendar'],
        event_id=parsed['eventId'],
        start=parsed['start'],
        end=parsed['end'],
        title=parsed['title'],
    )


def hold_key(source: SourceRef) -> str:
    """Identity of a source occurrence. Title is left out so renames become updates."""
    return KEY_SEPARATOR.join([
        source.src_account,
        source.src_calendar,
        source.event_id,
        source.start,
        source.end,
    ])
