import os

from .loader import section

DEFAULT_BASE_URL = "https://api.deepinfra.com/v1/openai"
DEFAULT_MODEL = "Qwen/Qwen3-Embedding-8B"
DEFAULT_DIM = 4096


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


class Embeddings:
    def __init__(self, config: dict | None = None) -> None:
        emb_cfg = section(config, "embeddings")
        key_env = str(emb_cfg.get("api_key_env", "EMBEDDINGS_API_KEY"))

        self.API_KEY: str | None = _first_env(key_env, "DEEPINFRA_API_KEY", "OPENAI_API_KEY")
        self.BASE_URL: str = str(emb_cfg.get("base_url", os.getenv("EMBEDDINGS_BASE_URL", DEFAULT_BASE_URL)))
        self.EMB_MODEL_ID: str = str(emb_cfg.get("model", os.getenv("EMB_MODEL_ID", DEFAULT_MODEL)))
        self.EMB_DIM: int = int(emb_cfg.get("dim", os.getenv("EMB_DIM", str(DEFAULT_DIM))))
        self.TIMEOUT: float = float(emb_cfg.get("timeout", os.getenv("EMBEDDINGS_TIMEOUT", "30")))

    @property
    def configured(self) -> bool:
        return bool(self.API_KEY)
