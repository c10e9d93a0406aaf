"""
CDN API Client
Provides authenticated access to the system update endpoints of the CDN:
- the version index (sun)
- title meta containers and content blobs (atumn)
"""

import logging
import ssl
from typing import Optional

import requests
import urllib3
from requests.adapters import HTTPAdapter

from sysupdate_dl import constants
from sysupdate_dl.certs import ClientIdentity
from sysupdate_dl.errors import ProtocolError
from sysupdate_dl.models import (
    ContentStream,
    EndpointConfig,
    MetaBlob,
    SysUpdateMeta,
    VersionIndex,
)


class ClientCertAdapter(HTTPAdapter):
    """
    Transport adapter that hands a prepared SSL context to urllib3.

    The context carries the client identity and has server verification disabled.
    """

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        # HTTPAdapter.__init__ calls init_poolmanager, so this must be set first
        self.ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(*args, **kwargs)


class CdnClient:
    """
    Client for the system update CDN.

    Every request presents the client certificate, skips server certificate
    validation and sends the firmware user agent. Nothing is retried: any
    failure surfaces as ProtocolError.
    """

    def __init__(self, config: EndpointConfig, identity: ClientIdentity,
                 session: Optional[requests.Session] = None,
                 timeout: float = constants.DEFAULT_TIMEOUT,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize CDN client.

        Args:
            config: Endpoint configuration (cluster, device ID, user agent fields)
            identity: Client certificate and key presented on every request
            session: Optional preconfigured session (a new one is created if None)
            timeout: Per-request timeout in seconds
            logger: Logger to use (defaults to the module logger)
        """
        self.config = config
        self.identity = identity
        self.timeout = timeout
        self.logger = logger or logging.getLogger("sysupdate_dl.api")

        # The CDN certificate is not in the default trust store
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.session = session if session is not None else requests.Session()
        self.session.verify = False
        self.session.headers.update({
            "User-Agent": config.user_agent,
            "Accept-Encoding": "gzip",
        })
        self.session.mount("https://", ClientCertAdapter(identity.to_ssl_context()))

        self.logger.debug(f"CDN client for {config.cdn_url} (user agent: {config.user_agent})")

    # ========== URL Construction Methods ==========

    @staticmethod
    def title_variant(title_id: str) -> str:
        """Path variant for /t/ requests: the system update title has its own."""
        if title_id == constants.SYSTEM_UPDATE_TITLE_ID:
            return constants.SYSTEM_UPDATE_VARIANT
        return constants.DEFAULT_VARIANT

    @staticmethod
    def content_variant(title_id: str) -> str:
        """Path variant for /c/ meta requests, selected by the same title ID check."""
        if title_id == constants.SYSTEM_UPDATE_TITLE_ID:
            return constants.SYSTEM_UPDATE_CONTENT_VARIANT
        return constants.DEFAULT_VARIANT

    def get_version_index_url(self) -> str:
        return constants.VERSION_INDEX_PATH.format(sun=self.config.sun_url, device_id=self.config.device_id)

    def get_meta_blob_url(self, title_id: str, version: str) -> str:
        return constants.META_BLOB_PATH.format(
            cdn=self.config.cdn_url,
            variant=self.title_variant(title_id),
            title_id=title_id,
            version=version,
            device_id=self.config.device_id,
        )

    def get_meta_content_url(self, title_id: str, content_id: str) -> str:
        return constants.META_CONTENT_PATH.format(
            cdn=self.config.cdn_url,
            variant=self.content_variant(title_id),
            content_id=content_id,
            device_id=self.config.device_id,
        )

    def get_content_url(self, content_id: str) -> str:
        return constants.CONTENT_PATH.format(cdn=self.config.cdn_url, content_id=content_id)

    # ========== Requests ==========

    def _get(self, url: str, stream: bool = False) -> requests.Response:
        """
        Issue a GET request and check the status.

        Raises:
            ProtocolError: On network failure or a non-2xx status
        """
        try:
            # REQUESTS_CA_BUNDLE overrides session.verify, so verify is passed per request
            response = self.session.get(url, timeout=self.timeout, stream=stream, verify=False)
        except requests.RequestException as e:
            raise ProtocolError(f"Request to {url} failed: {e}", url=url) from e

        self.logger.debug(f"GET {url} -> {response.status_code}")

        if not 200 <= response.status_code < 300:
            response.close()
            raise ProtocolError(
                f"Unexpected status {response.status_code} for {url}",
                status_code=response.status_code,
                url=url,
            )
        return response

    def _content_id(self, response: requests.Response, url: str) -> str:
        content_id = response.headers.get(constants.CONTENT_ID_HEADER)
        if not content_id:
            raise ProtocolError(f"Response from {url} has no {constants.CONTENT_ID_HEADER} header", url=url)
        return content_id

    def get_version_index(self) -> VersionIndex:
        """
        Get the list of latest system update titles.

        Returns:
            VersionIndex

        Raises:
            ProtocolError: On HTTP failure or if the body does not match the schema
        """
        url = self.get_version_index_url()
        response = self._get(url)
        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Version index from {url} is not JSON: {e}", url=url) from e

        index = VersionIndex.from_json(data)
        self.logger.debug(f"Version index: timestamp={index.timestamp}, {len(index.metas)} titles")
        return index

    def get_meta_blob(self, title_id: str, version: str) -> MetaBlob:
        """
        Download a title's meta container from the /t/ endpoint.

        Args:
            title_id: Hex title ID
            version: Title version (decimal string)

        Returns:
            MetaBlob with the container bytes and its content ID
        """
        url = self.get_meta_blob_url(title_id, version)
        response = self._get(url)
        return MetaBlob(
            data=response.content,
            title_id=title_id,
            content_id=self._content_id(response, url),
            version=version,
            url=url,
        )

    def get_meta(self, title_id: str, version: str) -> MetaBlob:
        """
        Download a title's content-meta container in two steps.

        The /t/ endpoint tells us the content ID, the /c/ endpoint serves the object.

        Args:
            title_id: Hex title ID
            version: Title version (decimal string)

        Returns:
            MetaBlob for the content-meta container
        """
        content_id = self.get_meta_blob(title_id, version).content_id

        url = self.get_meta_content_url(title_id, content_id)
        response = self._get(url)
        return MetaBlob(
            data=response.content,
            title_id=title_id,
            content_id=response.headers.get(constants.CONTENT_ID_HEADER) or content_id,
            version=version,
            url=url,
        )

    def get_content_blob(self, content_id: str) -> ContentStream:
        """
        Open a content blob for streaming.

        The body is not read here; gzip encoding is decoded while streaming.

        Args:
            content_id: Lowercase hex content ID

        Returns:
            ContentStream (caller must close it)
        """
        url = self.get_content_url(content_id)
        response = self._get(url, stream=True)
        response.raw.decode_content = True

        size = response.headers.get("Content-Length")
        return ContentStream(
            stream=response.raw,
            content_id=content_id,
            url=url,
            size=int(size) if size and size.isdigit() else None,
            _response=response,
        )

    def get_sys_update_meta(self) -> SysUpdateMeta:
        """
        Get the root system update meta container.

        Its content-meta record lists the meta titles of every part of the update.
        """
        meta = self.get_version_index().latest
        version = meta.version
        blob = self.get_meta_blob(meta.title_id, str(meta.title_version))

        self.logger.info(f"Latest system update: {meta.title_id} v{version} [{version.value}] "
                         f"buildnum={version.build_number}")
        return SysUpdateMeta(
            data=blob.data,
            title_id=meta.title_id,
            content_id=blob.content_id,
            version=version,
            url=blob.url,
        )

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "CdnClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
