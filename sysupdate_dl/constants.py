"""
Constants for CDN endpoints and client configuration
Host layout and defaults match the ones used by the console's own update client
"""

import os

# Endpoint hosts. The {env}/{server} parts are filled from EndpointConfig.
CDN_HOST_TEMPLATE = "https://atumn.hac.{env}.{server}.nintendo.net"
SUN_HOST_TEMPLATE = "https://sun.hac.{env}.{server}.nintendo.net/v1"

# Regional (China) cluster
CDN_HOST_REGIONAL_TEMPLATE = "https://atumn.hac.{env}.{server}.n.nintendoswitch.cn"
SUN_HOST_REGIONAL_TEMPLATE = "https://sun.hac.{env}.{server}.n.nintendoswitch.cn/v1"

# URL patterns (relative to the hosts above)
VERSION_INDEX_PATH = "{sun}/system_update_meta?device_id={device_id}"
META_BLOB_PATH = "{cdn}/t/{variant}/{title_id}/{version}?device_id={device_id}"
META_CONTENT_PATH = "{cdn}/c/{variant}/{content_id}?device_id={device_id}"
CONTENT_PATH = "{cdn}/c/c/{content_id}"

# The system update title is served from its own path variant
SYSTEM_UPDATE_TITLE_ID = "0100000000000816"
SYSTEM_UPDATE_VARIANT = "s"
SYSTEM_UPDATE_CONTENT_VARIANT = "c"
DEFAULT_VARIANT = "a"

# Response header carrying the content ID of a title's meta NCA
CONTENT_ID_HEADER = "X-Nintendo-Content-ID"

# User agent (same shape as the console firmware)
USER_AGENT = "NintendoSDK Firmware/{firmware_version} (platform:{platform}; did:{device_id}; eid:{env})"

# Default values
DEFAULT_FIRMWARE_VERSION = "5.1.0-3"
DEFAULT_PLATFORM = "NX"
DEFAULT_DEVICE_ID = "DEADCAFEBABEBEEF"
DEFAULT_ENV = "lp1"
DEFAULT_SERVER = "d4c"
DEFAULT_TIMEOUT = 30
DEFAULT_MAX_JOBS = 5
DEFAULT_PROGRESS_INTERVAL = 1.0

DEFAULT_CERT_PATH = "nx_tls_client_cert.pem"
DEFAULT_KEYSET_PATH = os.path.join(os.path.expanduser("~"), ".switch", "prod.keys")
DEFAULT_OUT_DIR_TEMPLATE = "sysupdate-[{value}]-{version}-bn_{build}"

# PEM section labels
PEM_PRIVATE_KEY = "PRIVATE KEY"
PEM_CERTIFICATE = "CERTIFICATE"

# File naming
CONTENT_SUFFIX = ".nca"
META_SUFFIX = ".cnmt.nca"

# Stream copy buffer (1 MiB)
STREAM_COPY_SIZE = 1024 * 1024

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ABORTED = 2
EXIT_INTERRUPTED = 130
