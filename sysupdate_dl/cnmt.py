"""
Packaged content-meta (.cnmt) parser

Reads the plaintext content-meta file found in the data section of a meta NCA.
Getting that file out of the encrypted NCA is the decoder's business; this
module only understands the record layout.
"""

import struct
from dataclasses import dataclass
from typing import Any, List

from sysupdate_dl.errors import ContainerDecodeError
from sysupdate_dl.resolver import DecodedMetaRef, DecodedRecord

# Header: title id, version, type, reserved, ext header size, content count, meta count
HEADER = struct.Struct("<QIBBHHH")
HEADER_SIZE = 0x20

# Content info: sha256 hash, content id, size (48-bit), content type, id offset
CONTENT_INFO_SIZE = 0x38
CONTENT_ID_OFFSET = 0x20
CONTENT_ID_SIZE = 0x10

# Meta info: title id, version, type, attributes, padding
META_INFO = struct.Struct("<QIBB2x")


@dataclass
class CnmtHeader:
    """Fixed header of a packaged content-meta file."""
    title_id: int
    version: int
    meta_type: int
    extended_header_size: int
    content_count: int
    meta_count: int


def parse_header(data: bytes) -> CnmtHeader:
    if len(data) < HEADER_SIZE:
        raise ContainerDecodeError(f"Content meta too short for header: {len(data)} bytes")
    title_id, version, meta_type, _, ext_size, content_count, meta_count = HEADER.unpack_from(data, 0)
    return CnmtHeader(
        title_id=title_id,
        version=version,
        meta_type=meta_type,
        extended_header_size=ext_size,
        content_count=content_count,
        meta_count=meta_count,
    )


def parse_cnmt(data: bytes) -> DecodedRecord:
    """
    Parse a plaintext packaged content-meta file.

    Args:
        data: Raw .cnmt file contents

    Returns:
        DecodedRecord listing nested meta titles and content IDs in file order

    Raises:
        ContainerDecodeError: If the data is truncated
    """
    header = parse_header(data)

    offset = HEADER_SIZE + header.extended_header_size
    end = offset + header.content_count * CONTENT_INFO_SIZE + header.meta_count * META_INFO.size
    if len(data) < end:
        raise ContainerDecodeError(
            f"Content meta truncated: need {end} bytes for {header.content_count} contents "
            f"and {header.meta_count} metas, got {len(data)}"
        )

    record = DecodedRecord()
    for _ in range(header.content_count):
        start = offset + CONTENT_ID_OFFSET
        record.content_ids.append(data[start:start + CONTENT_ID_SIZE])
        offset += CONTENT_INFO_SIZE

    for _ in range(header.meta_count):
        title_id, version, _, _ = META_INFO.unpack_from(data, offset)
        record.meta_entries.append(DecodedMetaRef(title_id=title_id, version=version))
        offset += META_INFO.size

    return record


class PlaintextCnmtDecoder:
    """
    Decoder for content-meta files that are already decrypted.

    Accepts either one .cnmt file or a list of them; the keyset is not used.
    """

    def decode(self, data: Any, keyset: Any) -> List[DecodedRecord]:
        if isinstance(data, (list, tuple)):
            return [parse_cnmt(item) for item in data]
        return [parse_cnmt(data)]
