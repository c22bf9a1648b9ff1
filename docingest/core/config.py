"""
docingest settings, read from the environment or a .env file.
Values are validated once when Settings() is constructed.

The Settings object is passed explicitly into registry, extractor and store
constructors; nothing in the pipeline reads configuration from module state.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Document registry
    # ------------------------------------------------------------------
    database_url: str = "sqlite+aiosqlite:///./docingest.db"   # or postgresql+asyncpg://...
    db_echo_sql:  bool = False

    registry_backend: Literal["sql", "memory"] = "sql"

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    dispatch_mode:        Literal["local", "celery"] = "local"
    worker_pool_size:     int = 4
    worker_queue_maxsize: int = 1000     # 0 = unbounded
    spool_dir:            str = "./.docingest-spool"

    # Periodic recovery (Celery beat) only touches rows idle for this long;
    # startup recovery in local mode touches every row.
    recovery_stale_after_seconds: int = 900
    recovery_batch_size:          int = 500

    celery_broker_url:     str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    # ------------------------------------------------------------------
    # Extraction / OCR
    # ------------------------------------------------------------------
    ocr_backend: Literal["unstructured", "textract", "none"] = "unstructured"

    ocr_min_chars_per_page: int = 50     # below this average a PDF is treated as scanned
    ocr_render_dpi:         int = 200
    aws_region:             str = "us-east-1"

    office_converter_binary:        str = "soffice"
    office_convert_timeout_seconds: int = 120

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------
    chunk_size:    int = 1000
    chunk_overlap: int = 200

    vector_store_backend: Literal["chroma", "weaviate"] = "chroma"

    # Chroma
    chroma_host:       str = "localhost"
    chroma_port:       int = 8000
    chroma_ssl:        bool = False
    chroma_collection: str = "akashic"
    chroma_auth_token: str = ""

    # Weaviate
    weaviate_url:        str = ""          # set for Weaviate Cloud; empty = local host/port
    weaviate_host:       str = "localhost"
    weaviate_port:       int = 8080
    weaviate_grpc_port:  int = 50051
    weaviate_api_key:    str = ""
    weaviate_collection: str = "DocumentChunk"
    weaviate_vectorizer: str = "text2vec-transformers"

    # Neo4j
    neo4j_uri:      str = ""               # e.g. bolt://localhost:7687; empty = not configured
    neo4j_user:     str = "neo4j"
    neo4j_password: str = ""
    neo4j_database: str = "neo4j"

    # FalkorDB
    falkordb_host:     str = ""            # empty = not configured
    falkordb_port:     int = 6379
    falkordb_password: str = ""
    falkordb_graph:    str = "akashic"

    # Graphiti (backed by Neo4j)
    graphiti_uri:      str = ""
    graphiti_user:     str = "neo4j"
    graphiti_password: str = ""
    graphiti_group_id: str = "docingest"

    # ------------------------------------------------------------------
    # Pipeline policy
    # ------------------------------------------------------------------
    # fail                  : one store failed → submission failed (lists both halves)
    # complete_with_warning : completed, failures recorded under metadata.warnings
    mixed_outcome_policy: Literal["fail", "complete_with_warning"] = "fail"

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug:   bool = False

    max_upload_bytes: int = 50 * 1024 * 1024

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
