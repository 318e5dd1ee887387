"""Embedding and retrieval pipeline for compliance documents."""
