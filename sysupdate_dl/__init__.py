"""
sysupdate-dl - A Python library for downloading console system updates

Fetches the system update meta from the CDN with a mutual-TLS client
certificate, resolves the tree of meta titles, and downloads every meta and
content NCA in parallel.
"""

__version__ = "0.1.0"
__author__ = "sysupdate-dl Contributors"
__license__ = "MIT"

from sysupdate_dl.api import CdnClient
from sysupdate_dl.certs import ClientIdentity, PemBundle, load_identity
from sysupdate_dl.downloader import DownloaderConfig, SysUpdateDownloader
from sysupdate_dl.models import ContentEntry, EndpointConfig, MetaEntry, VersionCode
from sysupdate_dl.progress import ProgressReporter
from sysupdate_dl.resolver import ContainerDecoder, ContentGraphResolver, DecodedMetaRef, DecodedRecord

__all__ = [
    "CdnClient",
    "ClientIdentity",
    "PemBundle",
    "load_identity",
    "DownloaderConfig",
    "SysUpdateDownloader",
    "ContentEntry",
    "EndpointConfig",
    "MetaEntry",
    "VersionCode",
    "ProgressReporter",
    "ContainerDecoder",
    "ContentGraphResolver",
    "DecodedMetaRef",
    "DecodedRecord",
]
