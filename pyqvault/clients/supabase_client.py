import logging
from supabase import Client, ClientOptions, create_client

from pyqvault.config import Config

logger = logging.getLogger(__name__)


def create_supabase_client(config: Config) -> Client:
    """Create a Supabase client for the storage backend"""
    if not (config.SUPABASE_URL and config.SUPABASE_KEY):
        raise ValueError("SUPABASE_URL and SUPABASE_KEY are required")

    options = ClientOptions(storage_client_timeout=int(config.STORAGE_TIMEOUT))
    client = create_client(config.SUPABASE_URL, config.SUPABASE_KEY, options=options)
    logger.info("Supabase storage client ready (bucket=%s)", config.SUPABASE_BUCKET)
    return client
