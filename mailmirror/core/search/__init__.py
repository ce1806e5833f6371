"""
Search module

Local embeddings (ONNX runtime) and hybrid subject/sender/vector search.
"""
from mailmirror.core.search.runtime import EmbeddingRuntime, OnnxEmbeddingRuntime, EmbeddingUnavailableError
from mailmirror.core.search.embeddings import EmbeddingBatcher
from mailmirror.core.search.hybrid_search import HybridSearch, SearchMode, SearchResult, SignalKind

__all__ = [
    'EmbeddingRuntime',
    'OnnxEmbeddingRuntime',
    'EmbeddingUnavailableError',
    'EmbeddingBatcher',
    'HybridSearch',
    'SearchMode',
    'SearchResult',
    'SignalKind',
]
