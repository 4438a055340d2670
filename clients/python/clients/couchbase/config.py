import os
import asyncio
from datetime import timedelta
from typing import List
from couchbase.auth import PasswordAuthenticator
from acouchbase.cluster import Cluster as AsyncCluster
from couchbase.options import ClusterOptions, ClusterTimeoutOptions

# Environment variables
USERNAME = os.environ.get('COUCHBASE_USERNAME', '')
PASSWORD = os.environ.get('COUCHBASE_PASSWORD', '')
DEFAULT_BUCKET_NAME = os.environ.get('COUCHBASE_BUCKET', '')
HOST = os.environ.get('COUCHBASE_HOST', '')
PROTOCOL = os.environ.get('COUCHBASE_PROTOCOL', '')
KV_TIMEOUT_SECONDS = float(os.environ.get('COUCHBASE_KV_TIMEOUT_SECONDS', '2.5'))
QUERY_TIMEOUT_SECONDS = float(os.environ.get('COUCHBASE_QUERY_TIMEOUT_SECONDS', '10'))

VALID_PROTOCOLS = ('couchbase', 'couchbases')


def configuration_errors() -> List[str]:
    """Return a list of problems with the Couchbase environment, empty when valid."""
    errors = []
    if not USERNAME:
        errors.append("COUCHBASE_USERNAME is missing or empty")
    if not PASSWORD:
        errors.append("COUCHBASE_PASSWORD is missing or empty")
    if not HOST:
        errors.append("COUCHBASE_HOST is missing or empty")
    if not DEFAULT_BUCKET_NAME:
        errors.append("COUCHBASE_BUCKET is missing or empty")
    if PROTOCOL not in VALID_PROTOCOLS:
        errors.append(f"COUCHBASE_PROTOCOL '{PROTOCOL}' is invalid. Must be one of {VALID_PROTOCOLS}")
    return errors


def auth() -> PasswordAuthenticator:
    errors = configuration_errors()
    if errors:
        raise ValueError(f"Invalid Couchbase Configuration:\n" + "\n".join(errors))
    return PasswordAuthenticator(USERNAME, PASSWORD)


# Module-level cluster cache
_cluster = None


async def get_cluster(max_retries: int = 10, initial_delay: float = 1.0, max_delay: float = 30.0):
    """
    Returns a cached Couchbase cluster connection.
    Creates a new connection if one doesn't exist.
    Implements retry with exponential backoff for startup race conditions.
    """
    global _cluster
    if _cluster is None:
        url = PROTOCOL + "://" + HOST
        options = ClusterOptions(
            auth(),
            timeout_options=ClusterTimeoutOptions(
                kv_timeout=timedelta(seconds=KV_TIMEOUT_SECONDS),
                query_timeout=timedelta(seconds=QUERY_TIMEOUT_SECONDS),
            ),
        )
        delay = initial_delay

        for attempt in range(1, max_retries + 1):
            try:
                cluster = await AsyncCluster.connect(url, options)
                break
            except Exception:
                if attempt == max_retries:
                    raise
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)  # Exponential backoff with cap

        await cluster.wait_until_ready(timedelta(seconds=50))
        _cluster = cluster
    return _cluster


async def check_connection():
    """
    Explicitly checks the connection to the Couchbase cluster.
    Useful for startup checks.
    """
    cluster = await get_cluster()
    await cluster.ping()
