"""
kbengine - Multi-tenant RAG Knowledge Engine

Turns documents and structured knowledge entries into searchable vectors
and serves reranked similarity search over them:
- Streaming chunking with bounded buffers
- Batched, sequential embedding with per-chunk failure isolation
- Per-knowledge-type pgvector tables with HNSW indexes
- Cross-encoder reranking with graceful fallback
- Hierarchical knowledge entries with duplicate cleanup
"""

__version__ = "0.1.0"
