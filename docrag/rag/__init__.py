"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Corpus loading and markdown parsing
- Document chunking with overlap
- Embedding with bounded concurrency and retry
- FAISS vector storage with a SQLite side table
- Semantic retrieval and answer generation
"""
