"""Memory subsystem package.

Architectural role:
    Groups the stateful memory components used by the application:
    - `models`: Turn, context window and search hit records.
    - `embedding_model`: embedding model bootstrap and the normalizing `Embedder`.
    - `eternal_memory`: durable per-session turn log with a FAISS semantic index.

This package centralizes persistence-facing memory behavior so the dispatcher and
the API layer depend on one stable memory interface.
"""
