# fleet_trip_engine/common/truststore_context.py
"""
TLS verification against the operating system trust store.

GPS platforms are frequently self-hosted behind corporate proxies that
re-sign traffic with a private root CA. That CA sits in the OS store, not in
certifi, so a plain httpx client fails verification. `truststore` is an
optional extra and is only imported when `use_truststore` is switched on.
"""

import logging
import ssl
from pathlib import Path
from ssl import SSLContext

__all__: list[str] = ['build_truststore_ssl_context']

logger: logging.Logger = logging.getLogger(__name__)


def build_truststore_ssl_context(extra_ca_bundle: Path | str | None = None) -> SSLContext:
    """
    Client SSLContext verifying against the OS store plus an optional bundle.

    Args:
        extra_ca_bundle: PEM file with additional roots, for a provider server
            signed by a CA that is in neither certifi nor the OS store.

    Raises:
        RuntimeError: If truststore is not installed.
        OSError: If the extra bundle cannot be read.
    """
    try:
        import truststore  # noqa: PLC0415
    except ImportError as import_error:
        raise RuntimeError(
            'use_truststore=True needs the truststore extra: '
            'pip install fleet-trip-engine[truststore]'
        ) from import_error

    ssl_context: SSLContext = truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    if extra_ca_bundle is not None:
        ssl_context.load_verify_locations(cafile=str(extra_ca_bundle))
        logger.debug('Added CA bundle %s on top of the system trust store', extra_ca_bundle)
    return ssl_context
