"""
Vector layer: embedding providers and per-content-type vector stores.
"""

from .index import IVectorStore, SimpleInMemoryVectorStore
from .faiss_store import FaissVectorStore
from .types import VectorRecord, QueryResult, chunk_record_id
from .embeddings import IEmbeddingProvider, HashingEmbedding, SentenceTransformerEmbedding, OpenAIEmbeddingProvider

__all__ = [
    'IVectorStore',
    'SimpleInMemoryVectorStore',
    'FaissVectorStore',
    'VectorRecord',
    'QueryResult',
    'chunk_record_id',
    'IEmbeddingProvider',
    'HashingEmbedding',
    'SentenceTransformerEmbedding',
    'OpenAIEmbeddingProvider'
]
