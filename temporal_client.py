"""Temporal client factory.

Creates connections to Temporal (Cloud or a local dev server) using settings
from the environment.
"""

import os
from pathlib import Path
from typing import Optional, Union

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client
from temporalio.service import TLSConfig


def _tls_config(cert_path: Optional[str], key_path: Optional[str]) -> Union[bool, TLSConfig]:
    """mTLS when a client certificate is configured, plain TLS otherwise."""
    if not cert_path:
        return True
    cert = Path(cert_path).read_bytes()
    key = Path(key_path).read_bytes() if key_path else None
    if key is None:
        raise ValueError("TEMPORAL_KEY_PATH must be set together with TEMPORAL_CERT_PATH")
    return TLSConfig(client_cert=cert, client_private_key=key)


async def get_temporal_client() -> Client:
    """Create and return a Temporal client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: Temporal endpoint (e.g., "temporal.example.com:7233")
    - TEMPORAL_NAMESPACE: Namespace (e.g., "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud (optional)
    - TEMPORAL_CERT_PATH / TEMPORAL_KEY_PATH: client certificate and key for mTLS (optional)
    - TEMPORAL_TLS: "false" to connect without TLS (local dev server)

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If required environment variables are missing
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT")
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY") or None
    cert_path = os.getenv("TEMPORAL_CERT_PATH")
    key_path = os.getenv("TEMPORAL_KEY_PATH")
    use_tls = os.getenv("TEMPORAL_TLS", "true").strip().lower() not in ("0", "false", "no", "off")

    if not endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal endpoint (e.g., 'localhost:7233')"
        )

    tls = _tls_config(cert_path, key_path) if use_tls else False

    client = await Client.connect(
        target_host=endpoint,
        namespace=namespace,
        tls=tls,
        api_key=api_key,
    )

    return client
