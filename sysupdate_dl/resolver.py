"""
Content graph resolution

Turns one downloaded content-meta container into the entries it points to.
Decrypting the container is delegated to a ContainerDecoder; walking the tree
level by level is done by the downloader, since every level needs a fetch.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from sysupdate_dl.errors import ConfigurationError, ContainerDecodeError, GraphInvariantViolation
from sysupdate_dl.models import ContentEntry, ContentGraphEntry, MetaEntry


@dataclass
class DecodedMetaRef:
    """A nested title referenced by a content-meta record."""
    title_id: int
    version: int


@dataclass
class DecodedRecord:
    """
    One content-meta record found inside a container.

    Attributes:
        meta_entries: Nested titles, in record order
        content_ids: Content (NCA) IDs, raw bytes or hex strings, in record order
    """
    meta_entries: List[DecodedMetaRef] = field(default_factory=list)
    content_ids: List[Union[bytes, str]] = field(default_factory=list)


class ContainerDecoder(Protocol):
    """
    Decrypts a container and enumerates the content-meta records inside it.

    Implementations raise ContainerDecodeError on corrupt input or a failed
    integrity check.
    """

    def decode(self, data: bytes, keyset: Any) -> Iterable[DecodedRecord]:
        ...


def format_title_id(title_id: int) -> str:
    return f"0{title_id:X}"


def format_content_id(content_id: Union[bytes, str]) -> str:
    if isinstance(content_id, (bytes, bytearray)):
        return bytes(content_id).hex()
    return content_id.lower()


class ContentGraphResolver:
    """
    Decodes a content-meta container into ContentGraphEntry values.

    Decoding is a single, non-recursive pass; entries keep the decoder's order
    (per record: meta entries first, then content entries).
    """

    def __init__(self, decoder: ContainerDecoder, keyset: Any,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize resolver.

        Args:
            decoder: Container decoder
            keyset: Decryption keys, passed through to the decoder untouched
            logger: Logger to use (defaults to the module logger)
        """
        if keyset is None:
            raise ConfigurationError("A keyset is required to decode containers")
        self.decoder = decoder
        self.keyset = keyset
        self.logger = logger or logging.getLogger("sysupdate_dl.resolver")

    def resolve(self, data: bytes) -> List[ContentGraphEntry]:
        """
        Decode a container and list the entries it references.

        Args:
            data: Raw container bytes

        Returns:
            Meta and content entries in decoder order

        Raises:
            ContainerDecodeError: If the decoder fails
        """
        try:
            records = list(self.decoder.decode(data, self.keyset))
        except ContainerDecodeError:
            raise
        except Exception as e:
            raise ContainerDecodeError(f"Failed to decode container: {e}") from e

        entries: List[ContentGraphEntry] = []
        for record in records:
            for ref in record.meta_entries:
                entries.append(MetaEntry(title_id=format_title_id(ref.title_id), version=str(ref.version)))
            for content_id in record.content_ids:
                entries.append(ContentEntry(content_id=format_content_id(content_id)))

        self.logger.debug(f"Decoded {len(records)} records, {len(entries)} entries")
        return entries


def split_entries(entries: Iterable[ContentGraphEntry]) -> Tuple[List[MetaEntry], List[ContentEntry]]:
    """Separate entries by kind, keeping order within each kind."""
    metas: List[MetaEntry] = []
    contents: List[ContentEntry] = []
    for entry in entries:
        if isinstance(entry, MetaEntry):
            metas.append(entry)
        else:
            contents.append(entry)
    return metas, contents


def require_kind(entries: Sequence[ContentGraphEntry], meta: bool, context: str) -> None:
    """
    Check that every entry in a batch is of the expected kind.

    Raises:
        GraphInvariantViolation: If any entry is of the other kind
    """
    for entry in entries:
        if entry.is_meta != meta:
            expected = "meta" if meta else "content"
            raise GraphInvariantViolation(f"Expected only {expected} entries in {context}, got {entry!r}")


def require_homogeneous(entries: Sequence[ContentGraphEntry], context: str) -> None:
    """
    Check that a decoded container lists only meta or only content entries.

    Raises:
        GraphInvariantViolation: If both kinds are present
    """
    if entries:
        require_kind(entries, entries[0].is_meta, context)
