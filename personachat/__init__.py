"""Persona chat back end with an in-memory retrieval (RAG) pipeline."""
