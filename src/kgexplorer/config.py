from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    # Default ledger/index DB used by the CLI and the web API.
    db_path: str = os.getenv("KGEXPLORER_DB_PATH", "./data/kgexplorer.db")

    # Aggregation backend: "sqlite" (local document index) or "elasticsearch".
    gateway: str = os.getenv("KGEXPLORER_GATEWAY", "sqlite")

    # Elasticsearch
    es_url: str = os.getenv("KGEXPLORER_ES_URL", "http://localhost:9200")
    es_index: str = os.getenv("KGEXPLORER_ES_INDEX", "documents")
    es_timeout: float = float(os.getenv("KGEXPLORER_ES_TIMEOUT", "30.0"))

    # Max concurrent aggregation calls for pairwise induction and per-type fan-out.
    gateway_workers: int = int(os.getenv("KGEXPLORER_GATEWAY_WORKERS", "8"))

    # Keyword network sizes
    network_terms: int = int(os.getenv("KGEXPLORER_NETWORK_TERMS", "10"))
