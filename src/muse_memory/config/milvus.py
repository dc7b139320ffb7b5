import os

from .loader import section


class Milvus:
    def __init__(self, config: dict | None = None) -> None:
        milvus_cfg = section(config, "milvus")
        self.MILVUS_URI: str = str(milvus_cfg.get("uri", os.getenv("MILVUS_URI", "")))
        self.MILVUS_TOKEN: str | None = milvus_cfg.get("token") or os.getenv("MILVUS_TOKEN") or None
        self.MILVUS_COLLECTION: str = str(milvus_cfg.get("collection", os.getenv("MILVUS_COLLECTION", "saga_vectors")))
        self.MILVUS_TIMEOUT: float = float(milvus_cfg.get("timeout", os.getenv("MILVUS_TIMEOUT", "10")))
        self.MILVUS_MAX_RETRIES: int = int(milvus_cfg.get("max_retries", os.getenv("MILVUS_MAX_RETRIES", "3")))
        self.MILVUS_RETRY_BASE_DELAY: float = float(
            milvus_cfg.get("retry_base_delay", os.getenv("MILVUS_RETRY_BASE_DELAY", "0.25"))
        )
        self.MILVUS_RETRY_MAX_DELAY: float = float(
            milvus_cfg.get("retry_max_delay", os.getenv("MILVUS_RETRY_MAX_DELAY", "4.0"))
        )
        enable_raw = milvus_cfg.get("enable_milvus", os.getenv("ENABLE_MILVUS", "1"))
        self.ENABLE_MILVUS: bool = str(enable_raw).lower() in ("1", "true", "yes")

    @property
    def configured(self) -> bool:
        return self.ENABLE_MILVUS and bool(self.MILVUS_URI)
