import os
from typing import Dict

from .loader import section

CATEGORIES = ("decision", "style", "preference", "session")


class MemorySettings:
    """Named duration settings for the memory policy.

    Values are kept raw (integer milliseconds or ``"Nh"``/``"Nd"`` strings);
    :func:`muse_memory.memory.policy.load_policy_config` parses them.
    """

    def __init__(self, config: dict | None = None) -> None:
        mem_cfg = section(config, "memory")
        policy_cfg = mem_cfg.get("policy", {})

        self.DURATIONS: Dict[str, str | int | None] = {}
        for category in CATEGORIES:
            for suffix in ("TTL", "HALF_LIFE"):
                name = f"MEMORY_{category.upper()}_{suffix}"
                self.DURATIONS[name] = policy_cfg.get(name.lower(), os.getenv(name))

        self.MAINTENANCE_INTERVAL: int = int(
            mem_cfg.get("maintenance_interval", os.getenv("MAINTENANCE_INTERVAL", "3600"))
        )
        self.RECONCILE_BATCH: int = int(mem_cfg.get("reconcile_batch", os.getenv("RECONCILE_BATCH", "200")))
