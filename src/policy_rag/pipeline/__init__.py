"""Pipeline module for the policy RAG system.

This package provides chunking, embedding, vector storage, job orchestration
and similarity retrieval for compliance documents.
"""
