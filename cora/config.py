"""Configuration from environment variables."""

import os
from pathlib import Path


def get_env_config():
    """Get configuration from environment variables."""
    return {
        "qdrant_host": os.getenv("QDRANT_HOST", "localhost"),
        "qdrant_port": int(os.getenv("QDRANT_PORT", "6333")),
        "collection_prefix": os.getenv("QDRANT_COLLECTION_PREFIX", "cora"),
        "ollama_host": os.getenv("OLLAMA_HOST", "http://localhost:11434"),
        "embedding_model": os.getenv("EMBEDDING_MODEL", "nomic-embed-text"),
        "vector_size": int(os.getenv("VECTOR_SIZE", "768")),
        "cache_path": Path(os.getenv("CACHE_PATH", "/cache")),
        "min_chunk_size": int(os.getenv("MIN_CHUNK_SIZE", "512")),
        "max_chunk_size": int(os.getenv("MAX_CHUNK_SIZE", "2048")),
        "window_lines": int(os.getenv("WINDOW_LINES", "50")),
        "batch_size": int(os.getenv("BATCH_SIZE", "32")),
        "max_concurrent": int(os.getenv("MAX_CONCURRENT_EMBEDDINGS", "4")),
        "max_concurrent_files": int(os.getenv("MAX_CONCURRENT_FILES", "4")),
        "store_max_retries": int(os.getenv("STORE_MAX_RETRIES", "3")),
        "store_retry_delay": float(os.getenv("STORE_RETRY_DELAY", "1.0")),
        "retrieval_k": int(os.getenv("RETRIEVAL_K", "20")),
        "vector_weight": float(os.getenv("VECTOR_WEIGHT", "0.5")),
        "pagerank_damping": float(os.getenv("PAGERANK_DAMPING", "0.85")),
        "pagerank_max_iter": int(os.getenv("PAGERANK_MAX_ITER", "100")),
        "pagerank_tol": float(os.getenv("PAGERANK_TOL", "1e-6")),
        "restart_floor": float(os.getenv("RESTART_FLOOR", "0.05")),
        "retrieval_weight": float(os.getenv("RETRIEVAL_WEIGHT", "0.7")),
        "inclusion_threshold": float(os.getenv("INCLUSION_THRESHOLD", "0.1")),
        "max_neighbors": int(os.getenv("MAX_NEIGHBORS", "25")),
        "max_elided_chunks": int(os.getenv("MAX_ELIDED_CHUNKS", "50")),
        "query_timeout": float(os.getenv("QUERY_TIMEOUT_SECONDS", "30")),
        "enable_commentary": os.getenv("ENABLE_COMMENTARY", "false").lower() == "true",
        "commentary_model": os.getenv("COMMENTARY_MODEL", "llama3.2"),
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "log_file": os.getenv("LOG_FILE", "/tmp/cora-server.log"),
    }
