"""
External integrations for the tutoring engine.

Modules:
- ollama_client: local Ollama server used as the text generator
"""
from .ollama_client import GeneratorError, GeneratorResponse, HealthStatus, OllamaClient

__all__ = ["OllamaClient", "GeneratorError", "GeneratorResponse", "HealthStatus"]
