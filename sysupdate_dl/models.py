"""
Data models for endpoint configuration, versions and content graph entries
"""

from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional, Union

from sysupdate_dl import constants
from sysupdate_dl.errors import ProtocolError, VersionParseError

_U64_MAX = (1 << 64) - 1


@dataclass(frozen=True)
class EndpointConfig:
    """
    Immutable description of who we claim to be and which cluster we talk to.

    Attributes:
        firmware_version: Firmware version string sent in the user agent
        platform: Platform tag (e.g. "NX")
        device_id: Device identifier, sent in the user agent and as a query parameter
        env: Environment tag (e.g. "lp1")
        server: Server tag used in the host names (e.g. "d4c")
        regional: Use the regional (China) cluster instead of the default one
    """
    firmware_version: str = constants.DEFAULT_FIRMWARE_VERSION
    platform: str = constants.DEFAULT_PLATFORM
    device_id: str = constants.DEFAULT_DEVICE_ID
    env: str = constants.DEFAULT_ENV
    server: str = constants.DEFAULT_SERVER
    regional: bool = False

    @property
    def user_agent(self) -> str:
        return constants.USER_AGENT.format(
            firmware_version=self.firmware_version,
            platform=self.platform,
            device_id=self.device_id,
            env=self.env,
        )

    @property
    def cdn_url(self) -> str:
        """Base URL of the content host (atumn)."""
        template = constants.CDN_HOST_REGIONAL_TEMPLATE if self.regional else constants.CDN_HOST_TEMPLATE
        return template.format(env=self.env, server=self.server)

    @property
    def sun_url(self) -> str:
        """Base URL of the version index host (sun)."""
        template = constants.SUN_HOST_REGIONAL_TEMPLATE if self.regional else constants.SUN_HOST_TEMPLATE
        return template.format(env=self.env, server=self.server)


@dataclass(frozen=True)
class VersionCode:
    """
    Packed title version.

    Bit layout: [26:30] major, [20:24] minor, [16:19] patch, [0:15] build number.
    """
    value: int

    @classmethod
    def parse(cls, raw: Union[str, int]) -> "VersionCode":
        """
        Parse a version code from its decimal string or integer form.

        Args:
            raw: Decimal string (e.g. "336592896") or non-negative integer

        Returns:
            VersionCode

        Raises:
            VersionParseError: If the value is not a 64-bit unsigned integer
        """
        if isinstance(raw, bool):
            raise VersionParseError(f"Not a version code: {raw!r}")
        if isinstance(raw, int):
            value = raw
        elif isinstance(raw, str):
            text = raw.strip()
            if not text.isdigit() or not text.isascii():
                raise VersionParseError(f"Not a decimal version code: {raw!r}")
            value = int(text)
        else:
            raise VersionParseError(f"Unsupported version code type: {type(raw).__name__}")

        if value < 0 or value > _U64_MAX:
            raise VersionParseError(f"Version code out of range: {value}")
        return cls(value)

    @classmethod
    def from_parts(cls, major: int, minor: int, patch: int, build: int = 0) -> "VersionCode":
        """Pack a semantic version and build number into a version code."""
        limits = (("major", major, 0x1F), ("minor", minor, 0x1F), ("patch", patch, 0xF), ("build", build, 0xFFFF))
        for name, part, limit in limits:
            if part < 0 or part > limit:
                raise VersionParseError(f"{name} out of range: {part} (max {limit})")
        return cls((major << 26) | (minor << 20) | (patch << 16) | build)

    @property
    def major(self) -> int:
        return (self.value >> 26) & 0x1F

    @property
    def minor(self) -> int:
        return (self.value >> 20) & 0x1F

    @property
    def patch(self) -> int:
        return (self.value >> 16) & 0xF

    @property
    def build_number(self) -> int:
        return self.value & 0xFFFF

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class MetaEntry:
    """
    Pointer to a nested title whose meta container must be fetched and decoded.

    Attributes:
        title_id: Hex title ID, "0"-prefixed (e.g. "0100000000000809")
        version: Title version as a decimal string
    """
    title_id: str
    version: str

    @property
    def is_meta(self) -> bool:
        return True

    @property
    def key(self) -> str:
        return f"{self.title_id}:{self.version}"


@dataclass(frozen=True)
class ContentEntry:
    """
    Pointer to a terminal content blob.

    Attributes:
        content_id: Lowercase hex content (NCA) ID
    """
    content_id: str

    @property
    def is_meta(self) -> bool:
        return False

    @property
    def key(self) -> str:
        return self.content_id


ContentGraphEntry = Union[MetaEntry, ContentEntry]


@dataclass
class TitleMeta:
    """One title listed in the version index."""
    title_id: str
    title_version: int

    @property
    def version(self) -> VersionCode:
        return VersionCode.parse(self.title_version)


@dataclass
class VersionIndex:
    """
    Parsed response of the system_update_meta endpoint.

    Attributes:
        timestamp: Server timestamp of the index
        metas: Titles listed by the index, latest system update first
    """
    timestamp: int
    metas: List[TitleMeta] = field(default_factory=list)

    @property
    def latest(self) -> TitleMeta:
        if not self.metas:
            raise ProtocolError("Version index lists no system update titles")
        return self.metas[0]

    @classmethod
    def from_json(cls, data: Any) -> "VersionIndex":
        """
        Create a VersionIndex from the decoded JSON body.

        Raises:
            ProtocolError: If the body does not match the expected schema
        """
        if not isinstance(data, dict):
            raise ProtocolError(f"Version index is not an object: {type(data).__name__}")

        timestamp = data.get("timestamp")
        if not _is_int(timestamp):
            raise ProtocolError(f"Version index has invalid timestamp: {timestamp!r}")

        metas_json = data.get("system_update_metas")
        if not isinstance(metas_json, list):
            raise ProtocolError("Version index is missing 'system_update_metas'")

        metas = []
        for meta_json in metas_json:
            if not isinstance(meta_json, dict):
                raise ProtocolError(f"Invalid system update meta: {meta_json!r}")
            title_id = meta_json.get("title_id")
            title_version = meta_json.get("title_version")
            if not isinstance(title_id, str) or not _is_int(title_version):
                raise ProtocolError(f"Invalid system update meta: {meta_json!r}")
            metas.append(TitleMeta(title_id=title_id, title_version=title_version))

        return cls(timestamp=timestamp, metas=metas)

    def to_json(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "system_update_metas": [
                {"title_id": meta.title_id, "title_version": meta.title_version}
                for meta in self.metas
            ],
        }


@dataclass
class MetaBlob:
    """A downloaded content-meta container, held in memory for decoding."""
    data: bytes
    title_id: str
    content_id: str
    version: str
    url: Optional[str] = None


@dataclass
class ContentStream:
    """
    An unbuffered content download.

    The stream belongs to the caller once returned; close() releases the connection.
    """
    stream: BinaryIO
    content_id: str
    url: Optional[str] = None
    size: Optional[int] = None
    _response: Any = field(default=None, repr=False)

    def close(self) -> None:
        if self._response is not None:
            self._response.close()
        else:
            self.stream.close()


@dataclass
class SysUpdateMeta:
    """
    The root system update meta container.

    Its decoded record lists the meta titles (or contents) of the whole update.
    """
    data: bytes
    title_id: str
    content_id: str
    version: VersionCode
    url: Optional[str] = None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
