"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Fixed-size document chunking
- Embedding generation
- In-memory vector index with cosine ranking
- Upload ingestion
- Prompt augmentation
"""
