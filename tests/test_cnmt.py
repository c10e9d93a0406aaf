"""
Tests for the plaintext .cnmt parser.
"""

from __future__ import annotations

import pytest

from conftest import build_cnmt
from sysupdate_dl.cnmt import PlaintextCnmtDecoder, parse_cnmt, parse_header
from sysupdate_dl.errors import ContainerDecodeError
from sysupdate_dl.models import ContentEntry, MetaEntry
from sysupdate_dl.resolver import ContentGraphResolver


def test_parses_header() -> None:
    header = parse_header(build_cnmt(0x0100000000000816, 336592899, metas=[(1, 2)], meta_type=0x03))

    assert header.title_id == 0x0100000000000816
    assert header.version == 336592899
    assert header.meta_type == 0x03
    assert header.content_count == 0
    assert header.meta_count == 1


def test_system_update_lists_meta_titles() -> None:
    data = build_cnmt(0x0100000000000816, 1, metas=[(0x0100000000000809, 5), (0x010000000000081B, 7)])

    record = parse_cnmt(data)

    assert [(ref.title_id, ref.version) for ref in record.meta_entries] == [
        (0x0100000000000809, 5),
        (0x010000000000081B, 7),
    ]
    assert record.content_ids == []


def test_title_lists_content_ids() -> None:
    ids = [bytes([0xAA] * 16), bytes([0xBB] * 16)]

    record = parse_cnmt(build_cnmt(0x0100000000000809, 5, content_ids=ids, extended_header=bytes(0x10)))

    assert record.content_ids == ids
    assert record.meta_entries == []


def test_short_header() -> None:
    with pytest.raises(ContainerDecodeError):
        parse_cnmt(b"\x00" * 8)


def test_truncated_records() -> None:
    data = build_cnmt(0x0100000000000809, 5, content_ids=[bytes(16)])

    with pytest.raises(ContainerDecodeError):
        parse_cnmt(data[:-1])


def test_decoder_with_resolver() -> None:
    data = build_cnmt(0x0100000000000809, 5, content_ids=[bytes.fromhex("0123456789ABCDEF0123456789ABCDEF")])

    entries = ContentGraphResolver(PlaintextCnmtDecoder(), keyset={}).resolve(data)

    assert entries == [ContentEntry("0123456789abcdef0123456789abcdef")]


def test_decoder_accepts_several_files() -> None:
    files = [build_cnmt(1, 1, metas=[(0x0100000000000809, 5)]), build_cnmt(2, 1, content_ids=[bytes(16)])]

    entries = ContentGraphResolver(PlaintextCnmtDecoder(), keyset={}).resolve(files)

    assert entries == [MetaEntry("0100000000000809", "5"), ContentEntry("00" * 16)]
