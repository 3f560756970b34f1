"""Retrieval-answer pipeline for the real-estate inventory assistant.

Main components:
- models.py: Pydantic models for requests, chunks and results
- retrieval.py: Chunk retrieval from the vector index
- composer/: Prompts, answer generation and citation validation
- orchestrators/: The query pipeline
- learning/: Feedback learning and chunk health batch jobs
- factory.py: Wiring of components from settings
"""

# Avoid importing heavy modules (e.g., langchain_openai) at package import time.
__all__ = []
