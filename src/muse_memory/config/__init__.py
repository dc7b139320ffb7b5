"""Memory layer configuration: ``.env`` + ``config.toml`` + logging bootstrap."""

import logging
import os

from dotenv import load_dotenv

from .embeddings import Embeddings
from .loader import load_raw_config, section
from .memory import MemorySettings
from .milvus import Milvus
from .store import Store

load_dotenv()

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(
    format=LOG_FORMAT,
    datefmt=DATE_FORMAT,
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
)
# Per-request chatter from the embedding and Milvus clients.
for _noisy in ("httpx", "openai", "pymilvus"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

_RAW_CONFIG = load_raw_config()

store = Store(_RAW_CONFIG)
embeddings = Embeddings(_RAW_CONFIG)
milvus = Milvus(_RAW_CONFIG)
memory = MemorySettings(_RAW_CONFIG)


class Config:
    store = store
    embeddings = embeddings
    milvus = milvus
    memory = memory


__all__ = ["store", "embeddings", "milvus", "memory", "Config", "load_raw_config", "section"]
