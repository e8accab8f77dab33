"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Fixed-width, language-tagged chunking
- Local embedding generation (ONNX model or hashing fallback)
- FAISS vector storage with an SQLite payload table
- Semantic retrieval with query expansion and source diversity
- Ingestion of extracted text
"""
