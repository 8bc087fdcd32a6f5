"""Embeddings, the vector store adapter, payload filters and the semantic query cache."""
